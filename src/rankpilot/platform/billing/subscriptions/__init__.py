"""
Subscription state store: authoritative tier/status record per account.
"""
