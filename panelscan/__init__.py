"""Adaptive, proxy-backed UID scanner."""

__version__ = "0.1.0"
