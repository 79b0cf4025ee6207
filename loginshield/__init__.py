"""Brute-force protection for login endpoints."""

__version__ = "1.0.0"
