"""VybeWhale bot -- Telegram front end with a supervised polling connection."""

__version__ = "1.0.0"
