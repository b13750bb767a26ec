"""Tiered, option-aware rental price computation.

Everything in here is pure: the same car, dates and options always give the
same numbers, so the preview shown while a customer picks dates matches what
gets stamped on the request at submission time.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from math import floor
from typing import Dict, Mapping, Optional, Tuple, Union

from rental_options import FIXED_DAILY, PERCENTAGE, OptionsSelection

DateLike = Union[str, date]

TIER_BRACKETS = (
    (2, 4, "price_2_4_days"),
    (5, 15, "price_5_15_days"),
    (16, 30, "price_16_30_days"),
)
OVER_30_DAYS_FIELD = "price_over_30_days"


@dataclass
class RentalDuration:
    days: int = 0
    hours: int = 0
    total_hours: float = 0.0


@dataclass
class PriceSummaryResult:
    price_per_day: float
    rental_days: int
    rental_hours: int
    total_hours: float
    base_price: float
    additional_costs: float
    total_price: float
    base_car_price: float
    option_costs: Dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


def _rate(car: Mapping[str, object], column: str) -> float:
    value = car.get(column)
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def get_tier_rate(days: int, car: Mapping[str, object]) -> float:
    """Per-day rate for a rental of ``days`` whole days; 0 below two days."""
    for low, high, column in TIER_BRACKETS:
        if low <= days <= high:
            return _rate(car, column)
    if days > 30:
        return _rate(car, OVER_30_DAYS_FIELD)
    return 0.0


def parse_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()


def parse_time(value: Optional[str]) -> Tuple[int, int]:
    if not value:
        return (0, 0)
    parts = str(value).strip().split(":")
    hours = int(parts[0])
    minutes = int(parts[1]) if len(parts) > 1 and parts[1] else 0
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Invalid time of day: {value!r}")
    return (hours, minutes)


def combine(day: DateLike, time_value: Optional[str]) -> datetime:
    hours, minutes = parse_time(time_value)
    return datetime.combine(parse_date(day), datetime.min.time()).replace(hour=hours, minute=minutes)


def end_instant(end_date: DateLike, end_time: Optional[str]) -> datetime:
    """An end time of midnight means "through the end of the prior day"."""
    hours, minutes = parse_time(end_time)
    if hours == 0 and minutes == 0:
        return combine(end_date, None) - timedelta(milliseconds=1)
    return combine(end_date, end_time)


def get_date_diff_in_days(start_date: DateLike, end_date: DateLike) -> int:
    return (parse_date(end_date) - parse_date(start_date)).days


def _round_half_up(value: float) -> int:
    return int(floor(value + 0.5))


def calculate_rental_duration(
    start_date: DateLike,
    start_time: Optional[str],
    end_date: DateLike,
    end_time: Optional[str],
) -> RentalDuration:
    start = combine(start_date, start_time)
    end = end_instant(end_date, end_time)
    total_hours = (end - start).total_seconds() / 3600
    if total_hours <= 0:
        return RentalDuration()
    days = int(total_hours // 24)
    hours = _round_half_up(total_hours % 24)
    return RentalDuration(days=days, hours=hours, total_hours=total_hours)


def _option_cost(option_pricing: str, rate: float, base_car_price: float, total_days: float) -> float:
    if option_pricing == PERCENTAGE:
        return base_car_price * total_days * rate
    if option_pricing == FIXED_DAILY:
        return rate * total_days
    return 0.0


def _as_selection(options: Union[OptionsSelection, Mapping[str, object], None]) -> OptionsSelection:
    if isinstance(options, OptionsSelection):
        return options
    return OptionsSelection.from_mapping(options)


def calculate_price_summary(
    car: Optional[Mapping[str, object]],
    dates: Mapping[str, object],
    options: Union[OptionsSelection, Mapping[str, object], None] = None,
) -> Optional[PriceSummaryResult]:
    if not car or not dates.get("start_date") or not dates.get("end_date"):
        return None
    try:
        duration = calculate_rental_duration(
            dates["start_date"],
            dates.get("start_time"),
            dates["end_date"],
            dates.get("end_time"),
        )
    except (TypeError, ValueError):
        return None
    if duration.days < 0 or duration.hours < 0:
        return None

    base_car_price = get_tier_rate(duration.days, car)
    price_per_day = base_car_price
    discount = _rate(car, "discount_percentage")
    if discount:
        price_per_day = price_per_day * (1 - discount / 100)

    base_price = price_per_day * duration.days + (duration.hours / 24) * price_per_day

    # add-ons are priced off the undiscounted rate and the fractional day count
    total_days = duration.total_hours / 24
    option_costs: Dict[str, float] = {}
    for option in _as_selection(options).selected_options():
        option_costs[option.id] = _option_cost(option.pricing, option.rate, base_car_price, total_days)
    additional_costs = sum(option_costs.values())

    return PriceSummaryResult(
        price_per_day=price_per_day,
        rental_days=duration.days,
        rental_hours=duration.hours,
        total_hours=duration.total_hours,
        base_price=base_price,
        additional_costs=additional_costs,
        total_price=base_price + additional_costs,
        base_car_price=base_car_price,
        option_costs=option_costs,
    )


def calculate_amount(
    total_days: float,
    price_per_day: float,
    options: Union[OptionsSelection, Mapping[str, object], None] = None,
) -> float:
    """Whole-booking amount on a given per-day price, rounded for storage."""
    base_price = price_per_day * total_days
    additional_costs = sum(
        _option_cost(option.pricing, option.rate, price_per_day, total_days)
        for option in _as_selection(options).selected_options()
    )
    return round(base_price + additional_costs, 2)
