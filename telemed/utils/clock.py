from datetime import datetime, timezone


def utcnow():
    """Waktu UTC naive, format yang disimpan di database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
