"""Billwatch: unbilled-work detection and client scope approval."""

__version__ = "0.3.0"
