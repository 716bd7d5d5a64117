"""Limit/offset windows for ledger and card listings."""

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def paginate(limit: int | None, offset: int | None, max_limit: int = MAX_LIMIT) -> tuple[int, int]:
    """Clamp into 1..max_limit and offset >= 0; None means the default."""
    limit = DEFAULT_LIMIT if limit is None else max(1, min(limit, max_limit))
    return limit, max(0, offset or 0)
