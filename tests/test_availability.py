import sqlite3
from datetime import date, datetime

import availability
import store


def test_day_inside_booked_rental_is_unavailable(db, car_id, make_rental):
    make_rental("2030-06-10", "2030-06-14")
    for day in (date(2030, 6, 10), date(2030, 6, 12), date(2030, 6, 14)):
        assert availability.is_date_unavailable(db, day, car_id)


def test_day_outside_rental_is_available(db, car_id, make_rental):
    make_rental("2030-06-10", "2030-06-14")
    assert not availability.is_date_unavailable(db, date(2030, 6, 9), car_id)
    assert not availability.is_date_unavailable(db, date(2030, 6, 15), car_id)


def test_day_and_datetime_inputs_agree(db, car_id, make_rental):
    make_rental("2030-06-10", "2030-06-14")
    assert availability.is_date_unavailable(db, datetime(2030, 6, 14, 23, 30), car_id)
    assert availability.is_date_in_actual_approved_request(db, "2030-06-14", car_id)
    assert not availability.is_date_in_actual_approved_request(db, "2030-06-15", car_id)


def test_only_booked_statuses_block(db, car_id, make_rental):
    make_rental("2030-06-01", "2030-06-03", status=store.RENTAL_CANCELLED)
    make_rental("2030-06-05", "2030-06-07", status=store.RENTAL_COMPLETED)
    make_rental("2030-06-09", "2030-06-11", status=store.RENTAL_CONTRACT)
    make_rental("2030-06-13", "2030-06-15", status=store.RENTAL_ACTIVE)
    assert not availability.is_date_unavailable(db, date(2030, 6, 2), car_id)
    assert not availability.is_date_unavailable(db, date(2030, 6, 6), car_id)
    assert availability.is_date_unavailable(db, date(2030, 6, 10), car_id)
    assert availability.is_date_unavailable(db, date(2030, 6, 14), car_id)


def test_other_cars_do_not_block(db, car_id, make_rental):
    other_car = store.insert_car(db, {"make": "Dacia", "model": "Logan"})
    make_rental("2030-06-10", "2030-06-14", car_id=other_car)
    assert not availability.is_date_unavailable(db, date(2030, 6, 12), car_id)


def test_lookup_failure_fails_open(db, car_id, monkeypatch):
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "rentals_overlapping", broken)
    assert availability.is_date_unavailable(db, date(2030, 6, 12), car_id) is False
    assert availability.is_date_unavailable(db, date(2030, 6, 12), car_id, fail_open=False) is True
    assert availability.is_range_available(db, car_id, "2030-06-10", "2030-06-12") is True


def test_earliest_future_rental_start(db, car_id, make_rental):
    make_rental("2030-07-01", "2030-07-03")
    make_rental("2030-06-20", "2030-06-22")
    make_rental("2030-06-12", "2030-06-14", status=store.RENTAL_CANCELLED)
    assert availability.get_earliest_future_rental_start(db, "2030-06-10", car_id) == date(2030, 6, 20)
    assert availability.get_earliest_future_rental_start(db, "2030-07-05", car_id) is None


def test_earliest_future_rental_start_fails_open(db, car_id, monkeypatch):
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("no such table: Rentals")

    monkeypatch.setattr(store, "earliest_rental_start_after", broken)
    assert availability.get_earliest_future_rental_start(db, "2030-06-10", car_id) is None


def test_return_date_cannot_span_next_booking(db, car_id, make_rental):
    make_rental("2030-06-20", "2030-06-22")
    assert not availability.is_return_date_blocked(db, "2030-06-10", "2030-06-19", car_id)
    assert availability.is_return_date_blocked(db, "2030-06-10", "2030-06-20", car_id)
    assert availability.is_return_date_blocked(db, "2030-06-10", "2030-06-25", car_id)


def test_range_conflicts(db, car_id, make_rental):
    rental_id = make_rental("2030-06-10", "2030-06-14")
    conflicts = availability.find_conflicting_rentals(db, car_id, "2030-06-14", "2030-06-16")
    assert [rental["id"] for rental in conflicts] == [rental_id]
    assert availability.is_range_available(db, car_id, "2030-06-15", "2030-06-16")
    assert availability.find_conflicting_rentals(
        db, car_id, "2030-06-11", "2030-06-12", exclude_rental_id=rental_id
    ) == []


def test_booking_message():
    assert availability.booking_message(date(2030, 6, 5)) == "The car is booked starting from 5 June 2030"
    assert availability.booking_message(None) == ""
