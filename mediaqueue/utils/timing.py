"""Timestamp helpers for job transitions.

All job timestamps are UTC and truncated to whole milliseconds, so that a
duration derived from two stored timestamps is exact in milliseconds.
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def duration_ms(started_at: datetime | None, completed_at: datetime | None) -> int | None:
    """Milliseconds between two timestamps; None unless both are present."""
    if started_at is None or completed_at is None:
        return None
    return (completed_at - started_at) // timedelta(milliseconds=1)


def backoff_deadline(now: datetime, delay_seconds: float) -> datetime:
    deadline = now + timedelta(seconds=delay_seconds)
    return deadline.replace(microsecond=(deadline.microsecond // 1000) * 1000)


def estimate_completion(
    now: datetime,
    elapsed_ms: int,
    completed_stages: int,
    total_stages: int,
) -> datetime | None:
    """Project the finish time from the average time spent per finished stage."""
    if completed_stages <= 0 or total_stages <= completed_stages:
        return None
    per_stage = elapsed_ms / completed_stages
    remaining = per_stage * (total_stages - completed_stages)
    return now + timedelta(milliseconds=int(remaining))
