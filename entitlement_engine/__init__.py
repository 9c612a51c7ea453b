"""Subscription & license entitlement engine."""

__version__ = "0.4.0"
