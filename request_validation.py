"""Admission control for customer-submitted borrow requests."""

from __future__ import annotations

import calendar
import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Mapping, Optional

import store
from pricing import calculate_price_summary, get_date_diff_in_days, get_tier_rate, parse_date, parse_time
from rental_options import OptionsSelection
from results import ErrorKind, OperationResult

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 100
MAX_PHONE_LENGTH = 20

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NAME_PATTERN = re.compile(r"^[A-Za-z\s\-']{2,50}$")
PHONE_PATTERN = re.compile(r"^[+0-9().\-]{7,20}$")
SUSPICIOUS_PATTERNS = [
    re.compile(r"<\s*/?\s*script", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"<[^>]*\bon[a-z]+\s*=", re.IGNORECASE),
    re.compile(r"\.\.[/\\]"),
    re.compile(r"\bunion\b\s+(all\s+)?\bselect\b", re.IGNORECASE),
    re.compile(r"\b(drop|truncate|alter)\s+table\b", re.IGNORECASE),
    re.compile(r"\binsert\s+into\b|\bdelete\s+from\b", re.IGNORECASE),
    re.compile(r";\s*(select|update|delete|drop|insert)\b", re.IGNORECASE),
    re.compile(r"'\s*(or|and)\s+'?\d+'?\s*=\s*'?\d+", re.IGNORECASE),
    re.compile(r"'\s*--"),
]

MISSING_CUSTOMER_INFO = "Missing customer information"
INVALID_EMAIL = "Please enter a valid email address"
INVALID_NAME = "Names may only contain letters, spaces, hyphens and apostrophes"
INVALID_PHONE = "Please enter a valid phone number"
INVALID_DATES = "Please choose valid rental dates"
PAST_START = "The pickup date cannot be in the past"
RATE_LIMITED = "Too many requests were sent from this email. Please try again later"
SUSPICIOUS_INPUT = "The request contains invalid characters"
SAVE_FAILED = "Your request could not be saved. Please try again"


@dataclass
class ValidationSettings:
    rate_limit_max_requests: int = 3
    rate_limit_window_minutes: int = 60
    max_advance_months: int = 6
    reject_unknown_options: bool = False

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> "ValidationSettings":
        return cls(
            rate_limit_max_requests=int(config.get("RATE_LIMIT_MAX_REQUESTS", 3)),
            rate_limit_window_minutes=int(config.get("RATE_LIMIT_WINDOW_MINUTES", 60)),
            max_advance_months=int(config.get("MAX_ADVANCE_MONTHS", 6)),
            reject_unknown_options=bool(config.get("REJECT_UNKNOWN_OPTIONS", False)),
        )


def add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def _text(value: object, limit: int = MAX_TEXT_LENGTH) -> str:
    return str(value or "").strip()[:limit]


def is_suspicious(*values: str) -> bool:
    return any(pattern.search(value) for value in values if value for pattern in SUSPICIOUS_PATTERNS)


def _resolve_user_id(current_user_id: Optional[Callable[[], Optional[int]]]) -> Optional[int]:
    """Owner of the new request, taken from the session only; a draft cannot name one."""
    if current_user_id is None:
        return None
    try:
        return current_user_id()
    except Exception as exc:  # identity lookup is best-effort
        logger.debug("current user lookup failed, booking as guest: %s", exc)
        return None


def create_user_borrow_request(
    db: sqlite3.Connection,
    draft: Mapping[str, object],
    *,
    current_user_id: Optional[Callable[[], Optional[int]]] = None,
    now: Optional[datetime] = None,
    today: Optional[date] = None,
    settings: Optional[ValidationSettings] = None,
) -> OperationResult:
    """Validate ``draft`` and persist it as a PENDING request.

    Steps short-circuit on the first failure and nothing is written until
    every check has passed, so a rejected draft never leaves a partial row.
    ``now`` is the naive-UTC audit clock, ``today`` the local calendar day.
    """
    settings = settings or ValidationSettings()
    now = now or store.naive_utcnow()
    today = today or date.today()

    email = _text(draft.get("customer_email"))
    first_name = _text(draft.get("customer_first_name"))
    last_name = _text(draft.get("customer_last_name"))
    if not email or not first_name or not last_name:
        return OperationResult.fail(ErrorKind.VALIDATION, MISSING_CUSTOMER_INFO)

    email = email.lower()
    comment = _text(draft.get("comment"))
    phone = _text(draft.get("customer_phone"), MAX_PHONE_LENGTH)

    if not EMAIL_PATTERN.match(email):
        return OperationResult.fail(ErrorKind.VALIDATION, INVALID_EMAIL)
    if not NAME_PATTERN.match(first_name) or not NAME_PATTERN.match(last_name):
        return OperationResult.fail(ErrorKind.VALIDATION, INVALID_NAME)
    if phone and not PHONE_PATTERN.match(re.sub(r"\s", "", phone)):
        return OperationResult.fail(ErrorKind.VALIDATION, INVALID_PHONE)

    try:
        start_date = parse_date(draft.get("start_date") or "")
        end_date = parse_date(draft.get("end_date") or "")
        start_time = _text(draft.get("start_time"), 5)
        end_time = _text(draft.get("end_time"), 5)
        parse_time(start_time)
        parse_time(end_time)
    except (TypeError, ValueError):
        return OperationResult.fail(ErrorKind.VALIDATION, INVALID_DATES)
    try:
        car_id = int(draft.get("car_id"))
    except (TypeError, ValueError):
        return OperationResult.fail(ErrorKind.VALIDATION, "Please choose a car")
    if start_date < today:
        return OperationResult.fail(ErrorKind.VALIDATION, PAST_START)
    if start_date > add_months(today, settings.max_advance_months):
        return OperationResult.fail(
            ErrorKind.VALIDATION,
            f"Bookings can be made at most {settings.max_advance_months} months in advance",
        )
    if end_date <= start_date:
        return OperationResult.fail(ErrorKind.VALIDATION, "The return date must be after the pickup date")

    since = now - timedelta(minutes=settings.rate_limit_window_minutes)
    try:
        recent = store.count_requests_since(db, email, since.isoformat())
    except sqlite3.Error as exc:
        logger.error("rate limit lookup failed email=%s: %s", email, exc)
        return OperationResult.fail(ErrorKind.STORAGE, SAVE_FAILED)
    if recent >= settings.rate_limit_max_requests:
        logger.info("rate limited borrow request email=%s recent=%s", email, recent)
        return OperationResult.fail(ErrorKind.VALIDATION, RATE_LIMITED)

    if is_suspicious(email, first_name, last_name, comment):
        logger.warning("rejected suspicious borrow request email=%s", email)
        return OperationResult.fail(ErrorKind.VALIDATION, SUSPICIOUS_INPUT)

    try:
        options = OptionsSelection.from_mapping(draft.get("options"), settings.reject_unknown_options)
    except ValueError as exc:
        return OperationResult.fail(ErrorKind.VALIDATION, str(exc))

    user_id = _resolve_user_id(current_user_id)

    try:
        car = store.get_car(db, car_id)
    except sqlite3.Error as exc:
        logger.error("car lookup failed car_id=%s: %s", car_id, exc)
        return OperationResult.fail(ErrorKind.STORAGE, SAVE_FAILED)
    if car is None:
        return OperationResult.fail(ErrorKind.NOT_FOUND, "Car not found")
    if car.get("status") != "available":
        return OperationResult.fail(ErrorKind.VALIDATION, "This car is not available for booking")

    rental_days = get_date_diff_in_days(start_date, end_date)
    price_per_day = get_tier_rate(rental_days, car)

    total_amount = draft.get("total_amount")
    if total_amount in (None, ""):
        summary = calculate_price_summary(
            car,
            {"start_date": start_date, "start_time": start_time, "end_date": end_date, "end_time": end_time},
            options,
        )
        total_amount = round(summary.total_price, 2) if summary else 0.0
    try:
        total_amount = float(total_amount)
    except (TypeError, ValueError):
        return OperationResult.fail(ErrorKind.VALIDATION, "Invalid total amount")
    if total_amount < 0:
        return OperationResult.fail(ErrorKind.VALIDATION, "Invalid total amount")

    now_iso = now.isoformat()
    try:
        request_id = store.insert_borrow_request(
            db,
            {
                "user_id": user_id,
                "car_id": car_id,
                "customer_name": f"{first_name} {last_name}",
                "customer_first_name": first_name,
                "customer_last_name": last_name,
                "customer_email": email,
                "customer_phone": phone,
                "start_date": start_date.isoformat(),
                "start_time": start_time,
                "end_date": end_date.isoformat(),
                "end_time": end_time,
                "comment": comment,
                "options": options.as_dict(),
                "price_per_day": price_per_day,
                "total_amount": total_amount,
                "status": store.REQUEST_PENDING,
                "requested_at": now_iso,
                "updated_at": now_iso,
            },
        )
    except sqlite3.Error as exc:
        logger.error("saving borrow request failed email=%s car_id=%s: %s", email, car_id, exc)
        return OperationResult.fail(ErrorKind.STORAGE, SAVE_FAILED)

    logger.info("borrow request created id=%s car_id=%s user_id=%s total=%s", request_id, car_id, user_id, total_amount)
    return OperationResult.ok(request_id=request_id)
