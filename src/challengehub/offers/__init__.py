"""Offers module -- completion offers, conversions and promo codes."""
