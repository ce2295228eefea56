"""Bill calculation and weekly invoice window helpers."""

import random
from datetime import datetime, time, timedelta
from typing import Iterable

from .models import WorkEntry


def calculate_bill(hours: float, rate: float) -> float:
    """Bill for a work entry: hours times rate, no rounding."""
    return hours * rate


def generate_invoice_number(today: datetime | None = None, rng: random.Random | None = None) -> str:
    """Invoice number of the form INV-YYYYMMDD-NNN, NNN a random 3-digit suffix."""
    today = today or datetime.now()
    suffix = (rng or random).randint(0, 999)
    return f"INV-{today.strftime('%Y%m%d')}-{suffix:03d}"


def last_week_range(now: datetime | None = None) -> tuple[datetime, datetime]:
    """Return the Monday..Sunday window of the week before the current one.

    The current week is the Monday-based week containing ``now``; on a Sunday
    that week has not finished, so the window is still the one before it.
    Start is Monday 00:00:00.000000, end is Sunday 23:59:59.999999.
    """
    now = now or datetime.now()
    this_monday = now.date() - timedelta(days=now.weekday())
    last_monday = this_monday - timedelta(days=7)
    last_sunday = last_monday + timedelta(days=6)
    return (
        datetime.combine(last_monday, time.min),
        datetime.combine(last_sunday, time.max),
    )


def entries_in_range(
    entries: Iterable[WorkEntry],
    start: datetime,
    end: datetime,
) -> list[WorkEntry]:
    """Entries whose date falls within [start, end], inclusive."""
    return [entry for entry in entries if start <= entry.date <= end]
