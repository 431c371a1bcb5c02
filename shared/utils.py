"""
Shared utility functions for the migration orchestrator.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def calculate_progress_percentage(completed: int, total: int) -> float:
    """
    Calculate progress percentage.

    Args:
        completed: Number of completed items
        total: Total number of items

    Returns:
        Progress percentage (0-100)
    """
    if total == 0:
        return 0.0
    return min(100.0, round((completed / total) * 100, 2))


def estimate_completion_time(
    total_items: int,
    completed_items: int,
    batch_size: int,
    avg_batch_seconds: float,
) -> Optional[datetime]:
    """
    Estimate completion time from the remaining batch count and the average
    batch duration.

    Args:
        total_items: Total number of items to process
        completed_items: Number of items completed so far
        batch_size: Items per batch
        avg_batch_seconds: Mean duration of completed batches

    Returns:
        Estimated completion datetime (UTC), or None if cannot estimate
    """
    if total_items == 0 or batch_size <= 0 or avg_batch_seconds <= 0:
        return None

    remaining_items = total_items - completed_items
    now = datetime.now(timezone.utc)
    if remaining_items <= 0:
        return now

    remaining_batches = -(-remaining_items // batch_size)
    return now + timedelta(seconds=remaining_batches * avg_batch_seconds)


def calculate_throughput(rows_processed: int, duration_seconds: float) -> float:
    """
    Calculate throughput in rows per second.

    Args:
        rows_processed: Number of rows processed
        duration_seconds: Duration in seconds

    Returns:
        Rows per second
    """
    if duration_seconds <= 0:
        return 0.0
    return round(rows_processed / duration_seconds, 2)


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "2h 30m 15s")
    """
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def parse_lsn(position: Optional[str]) -> Optional[int]:
    """
    Convert a PostgreSQL log position ("16/B374D848") to an integer.

    Args:
        position: LSN text as reported by the server

    Returns:
        Integer position, or None for missing / unparsable input
    """
    if not position or "/" not in position:
        return None
    high, _, low = position.partition("/")
    try:
        return (int(high, 16) << 32) + int(low, 16)
    except ValueError:
        return None


def backup_timestamp(moment: Optional[datetime] = None) -> str:
    """Timestamp suffix used in generated backup table names (YYYYMMDD_HHMMSS)."""
    return (moment or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
