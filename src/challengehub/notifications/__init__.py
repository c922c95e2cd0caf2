"""Notifications module -- in-app notifications for tenant users."""
