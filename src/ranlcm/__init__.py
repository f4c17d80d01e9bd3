"""
RAN LCM operator.

Watches Group resources and keeps one PlacementRule per listed cluster.
"""

__version__ = "0.1.0"
