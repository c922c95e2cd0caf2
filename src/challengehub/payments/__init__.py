"""Payments module -- in-app charges, idempotent webhook processing,
revenue shares and company subscriptions.
"""
