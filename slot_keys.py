from __future__ import annotations

ORDERED_PERIODS = ["first", "second", "lunch", "third"]
PERIODS = tuple(ORDERED_PERIODS)
LUNCH = "lunch"
NON_PERIOD = "non_period"
SLOT_SEPARATOR = "|"

PERIOD_CANONICAL = {
    "first": "first",
    "1": "first",
    "1st": "first",
    "p1": "first",
    "period 1": "first",
    "first period": "first",
    "second": "second",
    "2": "second",
    "2nd": "second",
    "p2": "second",
    "period 2": "second",
    "second period": "second",
    "lunch": "lunch",
    "third": "third",
    "3": "third",
    "3rd": "third",
    "p3": "third",
    "period 3": "third",
    "third period": "third",
    "non_period": NON_PERIOD,
    "non-period": NON_PERIOD,
    "non period": NON_PERIOD,
}


def normalize_period(raw: str | None, allow_non_period: bool = False) -> str | None:
    if raw is None:
        return None
    lowered = " ".join(str(raw).strip().lower().split())
    if not lowered:
        return None
    period = PERIOD_CANONICAL.get(lowered)
    if period == NON_PERIOD and not allow_non_period:
        return None
    return period


def period_rank(period: str) -> int:
    try:
        return ORDERED_PERIODS.index(period)
    except ValueError:
        return len(ORDERED_PERIODS)


def is_hour_bearing(period: str) -> bool:
    """Lunch never counts toward required or taught volunteer hours."""
    return period != LUNCH


def slot_key(classroom_id: str, period: str) -> str:
    return f"{classroom_id}{SLOT_SEPARATOR}{period}"


def parse_slot_key(key: str) -> tuple[str, str]:
    # Split on the last separator so classroom ids may contain anything.
    classroom_id, separator, period = key.rpartition(SLOT_SEPARATOR)
    if not separator or not classroom_id or not period:
        raise ValueError(f"invalid slot key '{key}'")
    return classroom_id, period
