"""Hole-in-One Entry & Verification Engine."""

__version__ = "0.1.0"
