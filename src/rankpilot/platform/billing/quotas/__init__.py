"""
Quota gate: request-time admission against tier quotas.
"""
