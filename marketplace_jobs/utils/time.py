from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Naive UTC timestamp.

    All timestamp columns are stored without a zone, so every comparison in
    the store is done against this value.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
