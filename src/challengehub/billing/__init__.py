"""Billing module -- access tiers derived from company subscriptions and
the monthly challenge-creation allowance.
"""
