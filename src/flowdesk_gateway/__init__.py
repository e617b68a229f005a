"""Discord gateway session and rate-limited REST client for Flow Desk."""

__version__ = "0.1.0"
