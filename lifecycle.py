"""Admin operations on borrow requests and rentals.

Every operation returns an ``OperationResult`` instead of raising. Operations
that touch two rows (accept, cancel, reject of an approved request) write in a
fixed order and report ``inconsistency`` when the second write fails after the
first one stuck, carrying the ids an operator needs to repair it by hand.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

import availability
import store
from pricing import calculate_price_summary, combine, get_date_diff_in_days, get_tier_rate, parse_date
from rental_options import OptionsSelection
from results import ErrorKind, OperationResult
from status_engine import status_for_clock

logger = logging.getLogger(__name__)

NOT_PENDING = "Request not found or not pending"
REQUEST_NOT_FOUND = "Request not found"
RENTAL_NOT_FOUND = "Rental not found"
CAR_NOT_FOUND = "Car not found"
STORE_UNAVAILABLE = "The booking store is unavailable. Please try again"
STATUS_CHANGED = "The record was changed by someone else. Please reload"
INVALID_DATES = "Please choose valid rental dates"
END_BEFORE_START = "The return must be after the pickup"

EDITABLE_REQUEST_FIELDS = ("start_date", "start_time", "end_date", "end_time", "total_amount", "options", "comment")
MAX_COMMENT_LENGTH = 100


def _storage_failure(action: str, exc: Exception, **ids: Optional[int]) -> OperationResult:
    logger.error("%s failed %s: %s", action, ids, exc)
    return OperationResult.fail(ErrorKind.STORAGE, STORE_UNAVAILABLE, **ids)


def _inconsistent(message: str, **ids: Optional[int]) -> OperationResult:
    logger.error("inconsistent state: %s %s", message, ids)
    return OperationResult.fail(ErrorKind.INCONSISTENCY, message, **ids)


def _conflict_message(conflicts: List[Dict[str, object]]) -> str:
    first = conflicts[0]
    return f"The car is already booked from {first['start_date']} to {first['end_date']}"


def _check_range(
    db: sqlite3.Connection,
    car_id: int,
    start_date: str,
    end_date: str,
    exclude_request_id: Optional[int] = None,
    exclude_rental_id: Optional[int] = None,
) -> Optional[str]:
    """Conflict message, or None when the car is free; storage errors propagate."""
    conflicts = availability.find_conflicting_rentals(
        db,
        car_id,
        start_date,
        end_date,
        exclude_request_id=exclude_request_id,
        exclude_rental_id=exclude_rental_id,
    )
    return _conflict_message(conflicts) if conflicts else None


def _parse_range(values: Mapping[str, object]) -> Tuple[str, str, str, str]:
    """Normalized (start_date, start_time, end_date, end_time); raises ValueError."""
    start_date = parse_date(values.get("start_date") or "").isoformat()
    end_date = parse_date(values.get("end_date") or "").isoformat()
    start_time = str(values.get("start_time") or "").strip()
    end_time = str(values.get("end_time") or "").strip()
    combine(start_date, start_time)
    combine(end_date, end_time)
    return start_date, start_time, end_date, end_time


def _end_after_start(start_date: str, start_time: str, end_date: str, end_time: str) -> bool:
    return combine(end_date, end_time) > combine(start_date, start_time)


# Requests


def accept_borrow_request(db: sqlite3.Connection, request_id: int) -> OperationResult:
    """Turn a PENDING request into an APPROVED rental.

    The rental is inserted first and the request flipped second, guarded on
    its PENDING status so two concurrent accepts cannot both win.
    """
    try:
        request = store.get_borrow_request(db, request_id)
    except sqlite3.Error as exc:
        return _storage_failure("loading request", exc, request_id=request_id)
    if request is None:
        return OperationResult.fail(ErrorKind.NOT_FOUND, NOT_PENDING, request_id=request_id)
    if request["status"] != store.REQUEST_PENDING:
        return OperationResult.fail(ErrorKind.CONFLICT, NOT_PENDING, request_id=request_id)

    try:
        conflict = _check_range(
            db, request["car_id"], request["start_date"], request["end_date"], exclude_request_id=request_id
        )
    except sqlite3.Error as exc:
        return _storage_failure("checking availability", exc, request_id=request_id)
    if conflict:
        return OperationResult.fail(ErrorKind.CONFLICT, conflict, request_id=request_id)

    try:
        rental_id = store.insert_rental(db, store.rental_from_request(request))
    except sqlite3.Error as exc:
        return _storage_failure("creating rental", exc, request_id=request_id)

    try:
        updated = store.update_borrow_request(
            db,
            request_id,
            {"status": store.REQUEST_APPROVED, "updated_at": store.naive_utcnow_iso()},
            expected_statuses=(store.REQUEST_PENDING,),
        )
    except sqlite3.Error as exc:
        logger.error("approving request id=%s failed after rental insert: %s", request_id, exc)
        return _inconsistent(
            "The rental was created but the request could not be marked approved",
            request_id=request_id,
            rental_id=rental_id,
        )

    if not updated:
        # lost the race: another accept or a reject got there first
        try:
            store.delete_rental(db, rental_id)
        except sqlite3.Error as exc:
            logger.error("removing duplicate rental id=%s failed: %s", rental_id, exc)
            return _inconsistent(
                "The request changed while it was accepted and the extra rental could not be removed",
                request_id=request_id,
                rental_id=rental_id,
            )
        return OperationResult.fail(ErrorKind.CONFLICT, NOT_PENDING, request_id=request_id)

    logger.info("accepted request id=%s rental id=%s car_id=%s", request_id, rental_id, request["car_id"])
    return OperationResult.ok(request_id=request_id, rental_id=rental_id)


def reject_borrow_request(db: sqlite3.Connection, request_id: int, reason: Optional[str] = None) -> OperationResult:
    try:
        request = store.get_borrow_request(db, request_id)
    except sqlite3.Error as exc:
        return _storage_failure("loading request", exc, request_id=request_id)
    if request is None:
        return OperationResult.fail(ErrorKind.NOT_FOUND, REQUEST_NOT_FOUND, request_id=request_id)
    status = request["status"]
    if status not in (store.REQUEST_PENDING, store.REQUEST_APPROVED):
        return OperationResult.fail(
            ErrorKind.CONFLICT, "Only pending or approved requests can be rejected", request_id=request_id
        )

    cancelled_rental_id = None
    if status == store.REQUEST_APPROVED:
        try:
            rental = store.get_rental_by_request(db, request_id)
            if rental is not None and rental["rental_status"] in store.BOOKED_RENTAL_STATUSES:
                cancelled = store.update_rental(
                    db,
                    rental["id"],
                    {"rental_status": store.RENTAL_CANCELLED, "updated_at": store.naive_utcnow_iso()},
                    expected_statuses=store.BOOKED_RENTAL_STATUSES,
                )
                if cancelled:
                    cancelled_rental_id = rental["id"]
        except sqlite3.Error as exc:
            return _storage_failure("cancelling rental of rejected request", exc, request_id=request_id)

    try:
        updated = store.update_borrow_request(
            db,
            request_id,
            {"status": store.REQUEST_REJECTED, "updated_at": store.naive_utcnow_iso()},
            expected_statuses=(status,),
        )
    except sqlite3.Error as exc:
        if cancelled_rental_id is not None:
            logger.error("rejecting request id=%s failed after rental cancel: %s", request_id, exc)
            return _inconsistent(
                "The rental was cancelled but the request could not be marked rejected",
                request_id=request_id,
                rental_id=cancelled_rental_id,
            )
        return _storage_failure("rejecting request", exc, request_id=request_id)
    if not updated:
        if cancelled_rental_id is not None:
            return _inconsistent(
                "The rental was cancelled but the request changed before it could be rejected",
                request_id=request_id,
                rental_id=cancelled_rental_id,
            )
        return OperationResult.fail(ErrorKind.CONFLICT, STATUS_CHANGED, request_id=request_id)

    logger.info("rejected request id=%s reason=%r", request_id, reason or "")
    return OperationResult.ok(request_id=request_id, rental_id=cancelled_rental_id)


def undo_reject_borrow_request(db: sqlite3.Connection, request_id: int) -> OperationResult:
    try:
        request = store.get_borrow_request(db, request_id)
        if request is None:
            return OperationResult.fail(ErrorKind.NOT_FOUND, REQUEST_NOT_FOUND, request_id=request_id)
        if request["status"] != store.REQUEST_REJECTED:
            return OperationResult.fail(
                ErrorKind.CONFLICT, "Only rejected requests can be set back to pending", request_id=request_id
            )
        updated = store.update_borrow_request(
            db,
            request_id,
            {"status": store.REQUEST_PENDING, "updated_at": store.naive_utcnow_iso()},
            expected_statuses=(store.REQUEST_REJECTED,),
        )
    except sqlite3.Error as exc:
        return _storage_failure("undoing reject", exc, request_id=request_id)
    if not updated:
        return OperationResult.fail(ErrorKind.CONFLICT, STATUS_CHANGED, request_id=request_id)
    logger.info("request id=%s set back to pending after reject", request_id)
    return OperationResult.ok(request_id=request_id)


def update_borrow_request(
    db: sqlite3.Connection,
    request_id: int,
    changes: Mapping[str, object],
    reject_unknown_options: bool = False,
) -> OperationResult:
    """Admin edit. Customer identity and the car stay as submitted."""
    if not changes:
        return OperationResult.fail(ErrorKind.VALIDATION, "Nothing to update", request_id=request_id)
    locked = sorted(key for key in changes if key not in EDITABLE_REQUEST_FIELDS)
    if locked:
        return OperationResult.fail(
            ErrorKind.VALIDATION, f"These fields cannot be edited: {', '.join(locked)}", request_id=request_id
        )

    try:
        request = store.get_borrow_request(db, request_id)
    except sqlite3.Error as exc:
        return _storage_failure("loading request", exc, request_id=request_id)
    if request is None:
        return OperationResult.fail(ErrorKind.NOT_FOUND, REQUEST_NOT_FOUND, request_id=request_id)
    if request["status"] == store.REQUEST_EXECUTED:
        return OperationResult.fail(
            ErrorKind.CONFLICT, "Executed requests can no longer be edited", request_id=request_id
        )

    values: Dict[str, object] = {}
    try:
        start_date, start_time, end_date, end_time = _parse_range({**request, **changes})
    except (TypeError, ValueError):
        return OperationResult.fail(ErrorKind.VALIDATION, INVALID_DATES, request_id=request_id)
    if not _end_after_start(start_date, start_time, end_date, end_time):
        return OperationResult.fail(ErrorKind.VALIDATION, END_BEFORE_START, request_id=request_id)
    for key, value in (
        ("start_date", start_date),
        ("start_time", start_time),
        ("end_date", end_date),
        ("end_time", end_time),
    ):
        if key in changes:
            values[key] = value

    if "total_amount" in changes:
        try:
            total_amount = float(changes["total_amount"])
        except (TypeError, ValueError):
            total_amount = -1.0
        if total_amount < 0:
            return OperationResult.fail(ErrorKind.VALIDATION, "Invalid total amount", request_id=request_id)
        values["total_amount"] = round(total_amount, 2)

    if "options" in changes:
        try:
            values["options"] = OptionsSelection.from_mapping(changes["options"], reject_unknown_options).as_dict()
        except ValueError as exc:
            return OperationResult.fail(ErrorKind.VALIDATION, str(exc), request_id=request_id)

    if "comment" in changes:
        values["comment"] = str(changes["comment"] or "").strip()[:MAX_COMMENT_LENGTH]

    # an approved request drags its booked rental along
    rental = None
    if request["status"] == store.REQUEST_APPROVED:
        try:
            rental = store.get_rental_by_request(db, request_id)
            conflict = None
            if (start_date, end_date) != (request["start_date"], request["end_date"]):
                conflict = _check_range(db, request["car_id"], start_date, end_date, exclude_request_id=request_id)
        except sqlite3.Error as exc:
            return _storage_failure("checking availability", exc, request_id=request_id)
        if conflict:
            return OperationResult.fail(ErrorKind.CONFLICT, conflict, request_id=request_id)
        if rental is not None and rental["rental_status"] not in store.BOOKED_RENTAL_STATUSES:
            rental = None

    values["updated_at"] = store.naive_utcnow_iso()
    try:
        updated = store.update_borrow_request(db, request_id, values, expected_statuses=(request["status"],))
    except sqlite3.Error as exc:
        return _storage_failure("updating request", exc, request_id=request_id)
    if not updated:
        return OperationResult.fail(ErrorKind.CONFLICT, STATUS_CHANGED, request_id=request_id)

    rental_values = {key: values[key] for key in ("start_date", "start_time", "end_date", "end_time") if key in values}
    if "total_amount" in values:
        rental_values["subtotal"] = rental_values["total_amount"] = values["total_amount"]
    if rental is not None and rental_values:
        rental_values["updated_at"] = values["updated_at"]
        try:
            moved = store.update_rental(
                db, rental["id"], rental_values, expected_statuses=store.BOOKED_RENTAL_STATUSES
            )
        except sqlite3.Error as exc:
            logger.error("updating rental id=%s after request edit failed: %s", rental["id"], exc)
            return _inconsistent(
                "The request was updated but its rental could not be changed to match",
                request_id=request_id,
                rental_id=rental["id"],
            )
        if not moved:
            logger.warning("rental id=%s left booked statuses during edit of request id=%s", rental["id"], request_id)

    logger.info("updated request id=%s fields=%s", request_id, sorted(changes))
    return OperationResult.ok(request_id=request_id, rental_id=rental["id"] if rental is not None else None)


def cancel_accepted_request(db: sqlite3.Connection, request_id: int) -> OperationResult:
    """Delete the rental made from an approved request, then reopen the request.

    The rental goes first: a failed delete leaves everything as it was rather
    than a PENDING request with a live rental behind it.
    """
    try:
        request = store.get_borrow_request(db, request_id)
    except sqlite3.Error as exc:
        return _storage_failure("loading request", exc, request_id=request_id)
    if request is None:
        return OperationResult.fail(ErrorKind.NOT_FOUND, REQUEST_NOT_FOUND, request_id=request_id)
    if request["status"] != store.REQUEST_APPROVED:
        return OperationResult.fail(
            ErrorKind.CONFLICT, "Only approved requests can be cancelled", request_id=request_id
        )

    try:
        deleted = store.delete_rentals_by_request(db, request_id)
    except sqlite3.Error as exc:
        return _storage_failure("deleting rental", exc, request_id=request_id)

    try:
        updated = store.update_borrow_request(
            db,
            request_id,
            {"status": store.REQUEST_PENDING, "updated_at": store.naive_utcnow_iso()},
            expected_statuses=(store.REQUEST_APPROVED,),
        )
    except sqlite3.Error as exc:
        logger.error("resetting request id=%s failed after rental delete: %s", request_id, exc)
        return _inconsistent(
            "The rental was removed but the request could not be set back to pending", request_id=request_id
        )
    if not updated:
        return _inconsistent(
            "The rental was removed but the request changed before it could be set back to pending",
            request_id=request_id,
        )

    logger.info("cancelled accepted request id=%s rentals removed=%s", request_id, deleted)
    return OperationResult.ok(request_id=request_id)


def set_request_pending(db: sqlite3.Connection, request_id: int) -> OperationResult:
    try:
        request = store.get_borrow_request(db, request_id)
    except sqlite3.Error as exc:
        return _storage_failure("loading request", exc, request_id=request_id)
    if request is None:
        return OperationResult.fail(ErrorKind.NOT_FOUND, REQUEST_NOT_FOUND, request_id=request_id)
    if request["status"] != store.REQUEST_APPROVED:
        return OperationResult.fail(
            ErrorKind.CONFLICT, "Only approved requests can be set back to pending", request_id=request_id
        )
    return cancel_accepted_request(db, request_id)


def list_borrow_requests(db: sqlite3.Connection, **filters) -> Tuple[List[Dict[str, object]], int]:
    """Filtered page of requests and the total count; storage errors propagate."""
    return store.list_borrow_requests(db, **filters)


# Rentals


def create_rental_manually(
    db: sqlite3.Connection,
    booking: Mapping[str, object],
    now: Optional[datetime] = None,
) -> OperationResult:
    """Admin booking that skips the request flow.

    ``total_amount`` defaults to the price summary for the range; the status
    is whatever the clock implies, so a booking entered after the fact lands
    as ACTIVE or COMPLETED straight away.
    """
    now = now or datetime.now()
    try:
        car_id = int(booking.get("car_id"))
    except (TypeError, ValueError):
        return OperationResult.fail(ErrorKind.VALIDATION, "Please choose a car")
    try:
        start_date, start_time, end_date, end_time = _parse_range(booking)
    except (TypeError, ValueError):
        return OperationResult.fail(ErrorKind.VALIDATION, INVALID_DATES)
    if not _end_after_start(start_date, start_time, end_date, end_time):
        return OperationResult.fail(ErrorKind.VALIDATION, END_BEFORE_START)
    try:
        options = OptionsSelection.from_mapping(booking.get("options"))
    except ValueError as exc:
        return OperationResult.fail(ErrorKind.VALIDATION, str(exc))

    try:
        car = store.get_car(db, car_id)
        if car is None:
            return OperationResult.fail(ErrorKind.NOT_FOUND, CAR_NOT_FOUND)
        conflict = _check_range(db, car_id, start_date, end_date)
    except sqlite3.Error as exc:
        return _storage_failure("checking availability", exc)
    if conflict:
        return OperationResult.fail(ErrorKind.CONFLICT, conflict)

    dates = {"start_date": start_date, "start_time": start_time, "end_date": end_date, "end_time": end_time}
    price_per_day = booking.get("price_per_day")
    if price_per_day in (None, ""):
        price_per_day = get_tier_rate(get_date_diff_in_days(start_date, end_date), car)
    total_amount = booking.get("total_amount")
    if total_amount in (None, ""):
        summary = calculate_price_summary(car, dates, options)
        total_amount = summary.total_price if summary else 0.0
    try:
        price_per_day = float(price_per_day)
        total_amount = round(float(total_amount), 2)
    except (TypeError, ValueError):
        return OperationResult.fail(ErrorKind.VALIDATION, "Invalid price")

    now_iso = store.naive_utcnow_iso()
    rental_status = status_for_clock(dates, now)
    try:
        rental_id = store.insert_rental(
            db,
            {
                "request_id": None,
                "user_id": booking.get("user_id"),
                "car_id": car_id,
                **dates,
                "price_per_day": price_per_day,
                "subtotal": total_amount,
                "taxes_fees": 0,
                "additional_taxes": 0,
                "total_amount": total_amount,
                "rental_status": rental_status,
                "payment_status": "PENDING",
                "created_at": now_iso,
                "updated_at": now_iso,
            },
        )
    except sqlite3.Error as exc:
        return _storage_failure("creating manual rental", exc)

    logger.info("manual rental id=%s car_id=%s status=%s", rental_id, car_id, rental_status)
    return OperationResult.ok(rental_id=rental_id)


def _move_rental(
    db: sqlite3.Connection,
    rental_id: int,
    allowed: Tuple[str, ...],
    target: str,
    refusal: str,
) -> OperationResult:
    try:
        rental = store.get_rental(db, rental_id)
        if rental is None:
            return OperationResult.fail(ErrorKind.NOT_FOUND, RENTAL_NOT_FOUND, rental_id=rental_id)
        if rental["rental_status"] not in allowed:
            return OperationResult.fail(ErrorKind.CONFLICT, refusal, rental_id=rental_id)
        updated = store.update_rental(
            db,
            rental_id,
            {"rental_status": target, "updated_at": store.naive_utcnow_iso()},
            expected_statuses=allowed,
        )
    except sqlite3.Error as exc:
        return _storage_failure(f"moving rental to {target}", exc, rental_id=rental_id)
    if not updated:
        return OperationResult.fail(ErrorKind.CONFLICT, STATUS_CHANGED, rental_id=rental_id)
    logger.info("rental id=%s %s -> %s", rental_id, rental["rental_status"], target)
    return OperationResult.ok(request_id=rental.get("request_id"), rental_id=rental_id)


def mark_rental_contract(db: sqlite3.Connection, rental_id: int) -> OperationResult:
    return _move_rental(
        db,
        rental_id,
        (store.RENTAL_APPROVED,),
        store.RENTAL_CONTRACT,
        "Only approved rentals can move to contract",
    )


def cancel_rental_order(db: sqlite3.Connection, rental_id: int) -> OperationResult:
    return _move_rental(
        db,
        rental_id,
        store.BOOKED_RENTAL_STATUSES,
        store.RENTAL_CANCELLED,
        "Only booked rentals can be cancelled",
    )


def restore_rental_order(
    db: sqlite3.Connection,
    rental_id: int,
    now: Optional[datetime] = None,
) -> OperationResult:
    """Undo a cancel; the car must still be free for the rental's dates."""
    now = now or datetime.now()
    try:
        rental = store.get_rental(db, rental_id)
        if rental is None:
            return OperationResult.fail(ErrorKind.NOT_FOUND, RENTAL_NOT_FOUND, rental_id=rental_id)
        if rental["rental_status"] != store.RENTAL_CANCELLED:
            return OperationResult.fail(
                ErrorKind.CONFLICT, "Only cancelled rentals can be restored", rental_id=rental_id
            )
        target = status_for_clock(rental, now)
        if target != store.RENTAL_COMPLETED:
            conflict = _check_range(
                db, rental["car_id"], rental["start_date"], rental["end_date"], exclude_rental_id=rental_id
            )
            if conflict:
                return OperationResult.fail(ErrorKind.CONFLICT, conflict, rental_id=rental_id)
        updated = store.update_rental(
            db,
            rental_id,
            {"rental_status": target, "updated_at": store.naive_utcnow_iso()},
            expected_statuses=(store.RENTAL_CANCELLED,),
        )
    except sqlite3.Error as exc:
        return _storage_failure("restoring rental", exc, rental_id=rental_id)
    if not updated:
        return OperationResult.fail(ErrorKind.CONFLICT, STATUS_CHANGED, rental_id=rental_id)
    logger.info("restored rental id=%s as %s", rental_id, target)
    return OperationResult.ok(request_id=rental.get("request_id"), rental_id=rental_id)


def list_rentals(db: sqlite3.Connection, month: Optional[str] = None, **filters) -> Tuple[List[Dict[str, object]], int]:
    """Filtered page of rentals. ``month`` (``YYYY-MM``) narrows to rentals starting that month."""
    if month:
        first = parse_date(f"{month}-01")
        following = first.replace(year=first.year + 1, month=1) if first.month == 12 else first.replace(month=first.month + 1)
        filters.setdefault("start_from", first.isoformat())
        filters.setdefault("start_before", following.isoformat())
    return store.list_rentals(db, **filters)
