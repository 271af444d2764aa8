"""Nonce-bound OAuth redirect relay."""

__version__ = "1.0.0"
