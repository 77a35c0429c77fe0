"""Offline-first receipt capture synchronised to Google Sheets and Drive."""

__version__ = "1.0.0"
