"""Passive email-authentication and DNS health diagnostics."""

__version__ = "1.0.0"
