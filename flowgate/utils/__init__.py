"""Utility helpers for flowgate."""

from .retry import compute_backoff, schedule_retry

__all__ = ["compute_backoff", "schedule_retry"]
