from datetime import datetime, timezone


def timestamp() -> float:
    return datetime.now(timezone.utc).timestamp()


def parse_id_list(raw) -> tuple[int, ...]:
    """Turn "3,5,8" or an iterable of ids into a sorted tuple of unique ints."""
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [part for part in raw.split(",") if part.strip()]
    return tuple(sorted({int(value) for value in raw}))
