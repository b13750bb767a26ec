"""Clock-driven status transitions for requests and rentals.

A sweep walks every open record and moves it along

    request  APPROVED -> EXECUTED            once the pickup instant has passed
    rental   APPROVED/CONTRACT -> ACTIVE     while pickup <= now < return
    rental   APPROVED/CONTRACT/ACTIVE -> COMPLETED once the return instant has passed

Every update is guarded by the status it expects to replace, so running a
sweep twice (or two sweeps at once) leaves the same end state. A record that
fails to update is logged and counted, and the sweep moves on.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Union

import availability
import store
from pricing import combine, end_instant

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0


class BookingConflict(Exception):
    pass


@dataclass
class SweepResult:
    executed: int = 0
    activated: int = 0
    completed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def merge(self, other: "SweepResult") -> "SweepResult":
        return SweepResult(
            executed=self.executed + other.executed,
            activated=self.activated + other.activated,
            completed=self.completed + other.completed,
            failed=self.failed + other.failed,
            errors=self.errors + other.errors,
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "executed": self.executed,
            "activated": self.activated,
            "completed": self.completed,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def has_started(record: Mapping[str, object], now: datetime) -> bool:
    return now >= combine(record["start_date"], record.get("start_time"))


def has_ended(record: Mapping[str, object], now: datetime) -> bool:
    return now >= end_instant(record["end_date"], record.get("end_time"))


def status_for_clock(record: Mapping[str, object], now: datetime) -> str:
    """Rental status a booking should hold at ``now`` if nothing else moved it."""
    if has_ended(record, now):
        return store.RENTAL_COMPLETED
    if has_started(record, now):
        return store.RENTAL_ACTIVE
    return store.RENTAL_APPROVED


def _ensure_rental_for_request(db: sqlite3.Connection, request: Mapping[str, object]) -> Optional[int]:
    """Approved requests from before rentals were created on accept have no rental yet."""
    if store.get_rental_by_request(db, request["id"]) is not None:
        return None
    conflicts = availability.find_conflicting_rentals(
        db, request["car_id"], request["start_date"], request["end_date"], exclude_request_id=request["id"]
    )
    if conflicts:
        raise BookingConflict(f"car {request['car_id']} already booked by rental {conflicts[0]['id']}")
    return store.insert_rental(db, store.rental_from_request(request))


def process_executed_requests(db: sqlite3.Connection, now: datetime) -> SweepResult:
    result = SweepResult()
    try:
        approved = store.requests_with_status(db, store.REQUEST_APPROVED)
    except sqlite3.Error as exc:
        logger.error("loading approved requests failed: %s", exc)
        result.record_failure(f"approved requests: {exc}")
        return result

    for request in approved:
        try:
            if not has_started(request, now):
                continue
            rental_id = _ensure_rental_for_request(db, request)
            if rental_id is not None:
                logger.info("created missing rental id=%s for request id=%s", rental_id, request["id"])
            updated = store.update_borrow_request(
                db,
                request["id"],
                {"status": store.REQUEST_EXECUTED, "updated_at": store.naive_utcnow_iso()},
                expected_statuses=(store.REQUEST_APPROVED,),
            )
        except (sqlite3.Error, ValueError, BookingConflict) as exc:
            logger.error("executing request id=%s failed: %s", request["id"], exc)
            result.record_failure(f"request {request['id']}: {exc}")
            continue
        if updated:
            result.executed += 1
    return result


def _move_rentals(
    db: sqlite3.Connection,
    now: datetime,
    from_statuses: tuple,
    target: str,
    due: Callable[[Mapping[str, object], datetime], bool],
) -> SweepResult:
    result = SweepResult()
    try:
        rentals = store.rentals_with_status(db, from_statuses)
    except sqlite3.Error as exc:
        logger.error("loading rentals %s failed: %s", from_statuses, exc)
        result.record_failure(f"rentals {'/'.join(from_statuses)}: {exc}")
        return result

    for rental in rentals:
        try:
            if not due(rental, now):
                continue
            updated = store.update_rental(
                db,
                rental["id"],
                {"rental_status": target, "updated_at": store.naive_utcnow_iso()},
                expected_statuses=from_statuses,
            )
        except (sqlite3.Error, ValueError) as exc:
            logger.error("moving rental id=%s to %s failed: %s", rental["id"], target, exc)
            result.record_failure(f"rental {rental['id']}: {exc}")
            continue
        if not updated:
            continue
        if target == store.RENTAL_ACTIVE:
            result.activated += 1
        else:
            result.completed += 1
    return result


def process_started_rentals(db: sqlite3.Connection, now: datetime) -> SweepResult:
    return _move_rentals(
        db,
        now,
        (store.RENTAL_APPROVED, store.RENTAL_CONTRACT),
        store.RENTAL_ACTIVE,
        lambda rental, at: has_started(rental, at) and not has_ended(rental, at),
    )


def process_completed_rentals(db: sqlite3.Connection, now: datetime) -> SweepResult:
    return _move_rentals(db, now, store.BOOKED_RENTAL_STATUSES, store.RENTAL_COMPLETED, has_ended)


def process_status_transitions(db: sqlite3.Connection, now: Optional[datetime] = None) -> SweepResult:
    """Run one full sweep; ``now`` is local wall-clock time."""
    now = now or datetime.now()
    result = (
        process_executed_requests(db, now)
        .merge(process_started_rentals(db, now))
        .merge(process_completed_rentals(db, now))
    )
    if result.executed or result.activated or result.completed or result.failed:
        logger.info(
            "status sweep executed=%s activated=%s completed=%s failed=%s",
            result.executed,
            result.activated,
            result.completed,
            result.failed,
        )
    return result


class StatusScheduler:
    """Runs the status sweep on a background thread until stopped.

    The scheduler opens its own sqlite connection for each sweep, so it never
    shares a connection with request handlers.
    """

    def __init__(
        self,
        database: Union[str, Path],
        interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.database = database
        self.interval = interval
        self.clock = clock
        self.last_result: Optional[SweepResult] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="status-sweep", daemon=True)
        self._thread.start()
        logger.info("status scheduler started interval=%ss", self.interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("status scheduler stopped")

    def run_once(self) -> SweepResult:
        conn = store.connect(self.database)
        try:
            self.last_result = process_status_transitions(conn, self.clock())
        finally:
            conn.close()
        return self.last_result

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # keep the thread alive for the next tick
                logger.exception("status sweep crashed")
            self._stop_event.wait(self.interval)
