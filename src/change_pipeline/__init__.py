"""Propose, test, approve and apply code changes."""

__version__ = "0.1.0"
