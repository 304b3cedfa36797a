"""Loyalty reward redemption client."""

__version__ = "0.1.0"
