import time


def unique_name(prefix: str) -> str:
    """Return `prefix` followed by a nanosecond timestamp.

    Used for naming containers and cloned databases, so names don't clash with instances
    started concurrently by other tests or other test runs.

    >>> unique_name("db").startswith("db_")
    True
    """
    return f"{prefix}_{time.time_ns():09d}"


def remaining_time(deadline: float) -> float:
    """Return seconds left until `deadline` (a `time.monotonic` value), never negative."""
    return max(deadline - time.monotonic(), 0.0)
