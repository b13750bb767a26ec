import sqlite3
import time
from datetime import datetime

import status_engine
import store
from status_engine import (
    StatusScheduler,
    process_completed_rentals,
    process_executed_requests,
    process_started_rentals,
    process_status_transitions,
    status_for_clock,
)

NOW = datetime(2030, 6, 12, 12, 0)


def snapshot(db):
    requests = db.execute("SELECT id, status FROM BorrowRequest ORDER BY id").fetchall()
    rentals = db.execute("SELECT id, request_id, rental_status FROM Rentals ORDER BY id").fetchall()
    return [tuple(row) for row in requests], [tuple(row) for row in rentals]


def test_started_approved_request_is_executed(db, make_request, make_rental):
    request_id = make_request("2030-06-10", "2030-06-14", status=store.REQUEST_APPROVED)
    rental_id = make_rental("2030-06-10", "2030-06-14", request_id=request_id)

    result = process_status_transitions(db, NOW)

    assert result.executed == 1
    assert result.activated == 1
    assert store.get_borrow_request(db, request_id)["status"] == store.REQUEST_EXECUTED
    assert store.get_rental(db, rental_id)["rental_status"] == store.RENTAL_ACTIVE


def test_future_request_is_left_alone(db, make_request, make_rental):
    request_id = make_request("2030-06-20", "2030-06-24", status=store.REQUEST_APPROVED)
    rental_id = make_rental("2030-06-20", "2030-06-24", request_id=request_id)

    result = process_status_transitions(db, NOW)

    assert (result.executed, result.activated, result.completed) == (0, 0, 0)
    assert store.get_borrow_request(db, request_id)["status"] == store.REQUEST_APPROVED
    assert store.get_rental(db, rental_id)["rental_status"] == store.RENTAL_APPROVED


def test_pickup_time_matters_on_the_first_day(db, make_request):
    request_id = make_request("2030-06-12", "2030-06-14", status=store.REQUEST_APPROVED, start_time="15:00")
    process_executed_requests(db, NOW)
    assert store.get_borrow_request(db, request_id)["status"] == store.REQUEST_APPROVED
    process_executed_requests(db, datetime(2030, 6, 12, 15, 0))
    assert store.get_borrow_request(db, request_id)["status"] == store.REQUEST_EXECUTED


def test_missing_rental_is_created_for_legacy_approval(db, make_request):
    request_id = make_request("2030-06-10", "2030-06-14", status=store.REQUEST_APPROVED, total_amount=3200)

    process_status_transitions(db, NOW)

    rental = store.get_rental_by_request(db, request_id)
    assert rental is not None
    assert rental["rental_status"] == store.RENTAL_ACTIVE
    assert rental["subtotal"] == 3200


def test_missing_rental_is_not_created_over_another_booking(db, make_request, make_rental):
    request_id = make_request("2030-06-10", "2030-06-14", status=store.REQUEST_APPROVED)
    make_rental("2030-06-12", "2030-06-20")

    result = process_executed_requests(db, NOW)

    assert result.failed == 1
    assert str(request_id) in result.errors[0]
    assert store.get_rental_by_request(db, request_id) is None
    assert store.get_borrow_request(db, request_id)["status"] == store.REQUEST_APPROVED


def test_ended_rentals_complete(db, make_rental):
    approved = make_rental("2030-06-01", "2030-06-05")
    contract = make_rental("2030-06-02", "2030-06-06", status=store.RENTAL_CONTRACT)
    active = make_rental("2030-06-03", "2030-06-07", status=store.RENTAL_ACTIVE)
    cancelled = make_rental("2030-06-03", "2030-06-07", status=store.RENTAL_CANCELLED)

    result = process_completed_rentals(db, NOW)

    assert result.completed == 3
    for rental_id in (approved, contract, active):
        assert store.get_rental(db, rental_id)["rental_status"] == store.RENTAL_COMPLETED
    assert store.get_rental(db, cancelled)["rental_status"] == store.RENTAL_CANCELLED


def test_midnight_return_completes_at_end_of_previous_day(db, make_rental):
    rental_id = make_rental("2030-06-10", "2030-06-13", status=store.RENTAL_ACTIVE, end_time="00:00")
    process_completed_rentals(db, datetime(2030, 6, 12, 23, 59))
    assert store.get_rental(db, rental_id)["rental_status"] == store.RENTAL_ACTIVE
    process_completed_rentals(db, datetime(2030, 6, 13, 0, 0))
    assert store.get_rental(db, rental_id)["rental_status"] == store.RENTAL_COMPLETED


def test_manual_booking_is_activated(db, make_rental):
    rental_id = make_rental("2030-06-11", "2030-06-15", status=store.RENTAL_CONTRACT)
    result = process_started_rentals(db, NOW)
    assert result.activated == 1
    assert store.get_rental(db, rental_id)["rental_status"] == store.RENTAL_ACTIVE


def test_request_that_already_ended_goes_straight_to_completed(db, make_request):
    request_id = make_request("2030-06-01", "2030-06-05", status=store.REQUEST_APPROVED)

    result = process_status_transitions(db, NOW)

    assert result.executed == 1
    assert result.activated == 0
    assert result.completed == 1
    assert store.get_rental_by_request(db, request_id)["rental_status"] == store.RENTAL_COMPLETED


def test_sweep_is_idempotent(db, make_request, make_rental):
    started = make_request("2030-06-10", "2030-06-14", status=store.REQUEST_APPROVED)
    make_rental("2030-06-10", "2030-06-14", request_id=started)
    make_request("2030-06-01", "2030-06-05", status=store.REQUEST_APPROVED)
    make_request("2030-06-20", "2030-06-24", status=store.REQUEST_PENDING)
    make_rental("2030-06-01", "2030-06-03", status=store.RENTAL_ACTIVE)

    process_status_transitions(db, NOW)
    after_first = snapshot(db)
    second = process_status_transitions(db, NOW)

    assert snapshot(db) == after_first
    assert (second.executed, second.activated, second.completed, second.failed) == (0, 0, 0, 0)


def test_one_failing_record_does_not_stop_the_sweep(db, make_rental, monkeypatch):
    first = make_rental("2030-06-01", "2030-06-05")
    second = make_rental("2030-06-02", "2030-06-06")
    real_update = store.update_rental

    def flaky_update(conn, rental_id, values, expected_statuses=None):
        if rental_id == first:
            raise sqlite3.OperationalError("database is locked")
        return real_update(conn, rental_id, values, expected_statuses)

    monkeypatch.setattr(store, "update_rental", flaky_update)
    result = process_completed_rentals(db, NOW)

    assert result.completed == 1
    assert result.failed == 1
    assert not result.success
    assert f"rental {first}" in result.errors[0]
    assert store.get_rental(db, second)["rental_status"] == store.RENTAL_COMPLETED


def test_unreadable_table_is_counted_not_raised(db, monkeypatch):
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("no such table: BorrowRequest")

    monkeypatch.setattr(store, "requests_with_status", broken)
    result = process_status_transitions(db, NOW)
    assert result.failed == 1
    assert result.as_dict()["success"] is False


def test_status_for_clock():
    booking = {"start_date": "2030-06-10", "start_time": "09:00", "end_date": "2030-06-14", "end_time": "09:00"}
    assert status_for_clock(booking, datetime(2030, 6, 1)) == store.RENTAL_APPROVED
    assert status_for_clock(booking, NOW) == store.RENTAL_ACTIVE
    assert status_for_clock(booking, datetime(2030, 6, 14, 9, 0)) == store.RENTAL_COMPLETED


def test_scheduler_runs_sweeps_on_its_own_connection(tmp_path, db, make_rental):
    path = db.execute("PRAGMA database_list").fetchone()["file"]
    rental_id = make_rental("2030-06-01", "2030-06-05", status=store.RENTAL_ACTIVE)
    scheduler = StatusScheduler(path, interval=0.05, clock=lambda: NOW)

    scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while scheduler.last_result is None and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        scheduler.stop()

    assert not scheduler.running
    assert scheduler.last_result is not None
    assert store.get_rental(db, rental_id)["rental_status"] == store.RENTAL_COMPLETED


def test_scheduler_run_once(tmp_path, db, make_rental):
    path = db.execute("PRAGMA database_list").fetchone()["file"]
    make_rental("2030-06-01", "2030-06-05")
    result = StatusScheduler(path, clock=lambda: NOW).run_once()
    assert result.completed == 1


def test_scheduler_survives_a_crashing_sweep(tmp_path, monkeypatch):
    calls = []

    def crash(conn, now):
        calls.append(now)
        raise RuntimeError("boom")

    monkeypatch.setattr(status_engine, "process_status_transitions", crash)
    scheduler = StatusScheduler(tmp_path / "sweep.db", interval=0.01, clock=lambda: NOW)
    scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while len(calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        scheduler.stop()
    assert len(calls) >= 2
