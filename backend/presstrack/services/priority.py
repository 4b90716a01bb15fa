# Overview: Delivery-date urgency tiers. Pure functions, no I/O.

from __future__ import annotations

import math
from datetime import date, datetime

from presstrack.time_utils import today_utc


PRIORITY_RED = "red"
PRIORITY_YELLOW = "yellow"
PRIORITY_BLUE = "blue"

VALID_PRIORITIES = {PRIORITY_RED, PRIORITY_YELLOW, PRIORITY_BLUE}

# Inclusive window for "yellow": 3 and 5 days out are both yellow
YELLOW_MIN_DAYS = 3
YELLOW_MAX_DAYS = 5


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise TypeError(f"expected date, got {type(value).__name__}")


def days_until(delivery_date, today=None) -> int:
    """
    Whole days between today's midnight and the delivery date's midnight.

    Both sides are truncated to midnight first, so the ceiling only matters
    for callers passing datetimes; negative means overdue.
    """
    today_d = _as_date(today) if today is not None else today_utc()
    delta = datetime.combine(_as_date(delivery_date), datetime.min.time()) - datetime.combine(
        today_d, datetime.min.time()
    )
    return math.ceil(delta.total_seconds() / 86400)


def compute_priority(delivery_date, today=None) -> str:
    """
    delivery date -> red | yellow | blue

    - more than 5 days out: blue
    - 3 to 5 days out (inclusive): yellow
    - fewer than 3 days, including overdue: red
    """
    days = days_until(delivery_date, today)
    if days > YELLOW_MAX_DAYS:
        return PRIORITY_BLUE
    if days >= YELLOW_MIN_DAYS:
        return PRIORITY_YELLOW
    return PRIORITY_RED
