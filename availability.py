"""Availability checks against confirmed rentals.

Reads here fail open: when the store cannot be queried a day is reported as
free and no future booking is reported. Callers that write (accept, manual
booking) use ``find_conflicting_rentals`` directly and fail closed instead.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime, time
from typing import Dict, List, Optional, Tuple, Union

import store
from pricing import parse_date

logger = logging.getLogger(__name__)

DayLike = Union[str, date]


def _day_bounds(day: date) -> Tuple[datetime, datetime]:
    return datetime.combine(day, time.min), datetime.combine(day, time(23, 59, 59))


def _covers(rental: Dict[str, object], day: date) -> bool:
    day_start, day_end = _day_bounds(day)
    rental_start, _ = _day_bounds(parse_date(rental["start_date"]))
    _, rental_end = _day_bounds(parse_date(rental["end_date"]))
    return rental_start <= day_end and rental_end >= day_start


def is_date_unavailable(
    db: sqlite3.Connection,
    day: Union[date, datetime],
    car_id: int,
    fail_open: bool = True,
) -> bool:
    """True when a booked rental of ``car_id`` covers ``day`` (inclusive bounds)."""
    target = parse_date(day)
    iso_day = target.isoformat()
    try:
        rentals = store.rentals_overlapping(db, car_id, iso_day, iso_day)
    except sqlite3.Error as exc:
        logger.warning("availability lookup failed car_id=%s day=%s: %s", car_id, iso_day, exc)
        return not fail_open
    return any(_covers(rental, target) for rental in rentals)


def is_date_in_actual_approved_request(
    db: sqlite3.Connection,
    day_string: str,
    car_id: int,
    fail_open: bool = True,
) -> bool:
    return is_date_unavailable(db, parse_date(day_string), car_id, fail_open=fail_open)


def get_earliest_future_rental_start(
    db: sqlite3.Connection,
    reference_date: DayLike,
    car_id: int,
) -> Optional[date]:
    iso_day = parse_date(reference_date).isoformat()
    try:
        start = store.earliest_rental_start_after(db, car_id, iso_day)
    except sqlite3.Error as exc:
        logger.warning("future booking lookup failed car_id=%s after=%s: %s", car_id, iso_day, exc)
        return None
    return parse_date(start) if start else None


def find_conflicting_rentals(
    db: sqlite3.Connection,
    car_id: int,
    start_date: DayLike,
    end_date: DayLike,
    exclude_request_id: Optional[int] = None,
    exclude_rental_id: Optional[int] = None,
) -> List[Dict[str, object]]:
    """Booked rentals overlapping the inclusive day range. Storage errors propagate."""
    return store.rentals_overlapping(
        db,
        car_id,
        parse_date(start_date).isoformat(),
        parse_date(end_date).isoformat(),
        exclude_request_id=exclude_request_id,
        exclude_rental_id=exclude_rental_id,
    )


def is_range_available(
    db: sqlite3.Connection,
    car_id: int,
    start_date: DayLike,
    end_date: DayLike,
    fail_open: bool = True,
) -> bool:
    try:
        return not find_conflicting_rentals(db, car_id, start_date, end_date)
    except sqlite3.Error as exc:
        logger.warning("range availability lookup failed car_id=%s: %s", car_id, exc)
        return fail_open


def is_return_date_blocked(
    db: sqlite3.Connection,
    pickup_date: DayLike,
    return_date: DayLike,
    car_id: int,
) -> bool:
    """A return date may not reach into the next confirmed booking after pickup."""
    pickup = parse_date(pickup_date)
    earliest = get_earliest_future_rental_start(db, pickup, car_id)
    if earliest is None or pickup >= earliest:
        return False
    return parse_date(return_date) >= earliest


def booking_message(next_start: Optional[date]) -> str:
    if next_start is None:
        return ""
    return f"The car is booked starting from {next_start.day} {next_start:%B %Y}"
