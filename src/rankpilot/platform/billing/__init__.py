"""
Billing: subscription lifecycle and quota enforcement.

Submodules:
- tiers: tier catalog (quotas and entitlements)
- usage: quota ledger
- subscriptions: subscription state store and query API
- webhooks: Stripe event reconciler
- dunning: grace periods and their expiry
- quotas: request-time admission gate
"""
