"""
Event reconciler: verified provider webhooks applied to subscription records.
"""
