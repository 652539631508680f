"""Telegram video relay bot with a file_id cache."""

__version__ = "0.1.0"
