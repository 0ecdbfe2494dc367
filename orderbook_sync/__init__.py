"""Offline-first sync engine for the order book app."""

__version__ = "2.0.0"
