"""TaskPulse — task change notifications, email digests and rate limiting."""

__version__ = "0.3.0"
