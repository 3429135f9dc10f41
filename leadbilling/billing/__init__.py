"""Subscription and lead-credit reconciliation core."""
