"""
RankPilot Platform Services.

Subscription lifecycle and quota enforcement for the RankPilot SEO platform.
"""

__version__ = "1.0.0"
