from datetime import datetime, timezone


def utcnow() -> datetime:
    # Naive UTC, matching what the database columns store
    return datetime.now(timezone.utc).replace(tzinfo=None)
