"""Outbound clients for the Whop platform API."""
