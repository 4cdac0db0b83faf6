"""Shared error types for tracker_core."""


class TransientError(RuntimeError):
    """Retry-safe dependency failure (rate limited, briefly unavailable)."""
