"""Resilient Chrome DevTools Protocol connection manager."""

__version__ = "0.1.0"
