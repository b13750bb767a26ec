import sqlite3
from datetime import date, datetime, timedelta

import pytest

import request_validation as rv
import store
from results import ErrorKind

TODAY = date(2030, 1, 10)
NOW = datetime(2030, 1, 10, 12, 0)


@pytest.fixture
def draft(car_id):
    return {
        "customer_email": "  Ada@Example.com ",
        "customer_first_name": "Ada",
        "customer_last_name": "Lovelace",
        "customer_phone": "+44 20 7946 0000",
        "car_id": car_id,
        "start_date": "2030-01-15",
        "start_time": "10:00",
        "end_date": "2030-01-18",
        "end_time": "10:00",
        "comment": "Child seat please",
        "options": {"childSeat": True},
        "total_amount": 3300,
    }


def submit(db, draft, **kwargs):
    kwargs.setdefault("now", NOW)
    kwargs.setdefault("today", TODAY)
    return rv.create_user_borrow_request(db, draft, **kwargs)


def request_count(db):
    return db.execute("SELECT COUNT(*) FROM BorrowRequest").fetchone()[0]


def test_valid_draft_is_stored_as_pending(db, draft):
    result = submit(db, draft)
    assert result.success
    saved = store.get_borrow_request(db, result.request_id)
    assert saved["status"] == store.REQUEST_PENDING
    assert saved["customer_email"] == "ada@example.com"
    assert saved["customer_name"] == "Ada Lovelace"
    assert saved["price_per_day"] == 1000
    assert saved["total_amount"] == 3300
    assert saved["options"]["childSeat"] is True
    assert saved["user_id"] is None


def test_total_is_quoted_when_not_supplied(db, draft):
    del draft["total_amount"]
    result = submit(db, draft)
    assert store.get_borrow_request(db, result.request_id)["total_amount"] == pytest.approx(3300)


@pytest.mark.parametrize("field", ["customer_email", "customer_first_name", "customer_last_name"])
def test_missing_customer_information(db, draft, field):
    draft[field] = "   "
    result = submit(db, draft)
    assert not result.success
    assert result.error_kind == ErrorKind.VALIDATION
    assert result.error == rv.MISSING_CUSTOMER_INFO
    assert request_count(db) == 0


@pytest.mark.parametrize(
    "field, value, message",
    [
        ("customer_email", "ada@example", rv.INVALID_EMAIL),
        ("customer_first_name", "Ada3", rv.INVALID_NAME),
        ("customer_last_name", "L", rv.INVALID_NAME),
        ("customer_phone", "12ab", rv.INVALID_PHONE),
    ],
)
def test_format_rules(db, draft, field, value, message):
    draft[field] = value
    result = submit(db, draft)
    assert result.error == message
    assert request_count(db) == 0


def test_phone_is_optional(db, draft):
    draft["customer_phone"] = ""
    assert submit(db, draft).success


def test_pickup_in_the_past_is_rejected(db, draft):
    draft["start_date"] = "2030-01-09"
    assert submit(db, draft).error == rv.PAST_START


def test_pickup_today_is_allowed(db, draft):
    draft["start_date"] = "2030-01-10"
    assert submit(db, draft).success


def test_pickup_at_most_six_months_ahead(db, draft):
    draft.update(start_date="2030-07-11", end_date="2030-07-14")
    result = submit(db, draft)
    assert not result.success
    assert "6 months" in result.error

    draft.update(start_date="2030-07-10", end_date="2030-07-13")
    assert submit(db, draft).success


def test_return_must_follow_pickup(db, draft):
    draft["end_date"] = draft["start_date"]
    result = submit(db, draft)
    assert result.error_kind == ErrorKind.VALIDATION
    assert request_count(db) == 0


def test_garbled_dates_are_rejected(db, draft):
    draft["start_date"] = "15/01/2030"
    assert submit(db, draft).error == rv.INVALID_DATES


def test_fourth_request_within_an_hour_is_rate_limited(db, draft):
    for _ in range(3):
        assert submit(db, draft).success
    result = submit(db, draft, now=NOW + timedelta(minutes=30))
    assert not result.success
    assert result.error == rv.RATE_LIMITED
    assert request_count(db) == 3


def test_rate_limit_window_slides(db, draft):
    for _ in range(3):
        assert submit(db, draft).success
    assert submit(db, draft, now=NOW + timedelta(minutes=61)).success


def test_rate_limit_counts_per_email(db, draft):
    for _ in range(3):
        assert submit(db, draft).success
    draft["customer_email"] = "grace@example.com"
    assert submit(db, draft).success


@pytest.mark.parametrize(
    "comment",
    [
        "<script>alert(1)</script>",
        "javascript:alert(1)",
        "<img src=x onerror=alert(1)>",
        "../../etc/passwd",
        "1' OR '1'='1",
        "x'; DROP TABLE users; --",
    ],
)
def test_injection_style_input_is_rejected(db, draft, comment):
    draft["comment"] = comment
    result = submit(db, draft)
    assert result.error == rv.SUSPICIOUS_INPUT
    assert request_count(db) == 0


def test_plain_comment_with_apostrophe_is_fine(db, draft):
    draft["comment"] = "I'll pick it up at the airport, on time"
    assert submit(db, draft).success


@pytest.mark.parametrize("comment", ["once = enough", "Pickup on=time if possible"])
def test_event_handler_pattern_needs_a_tag(db, draft, comment):
    draft["comment"] = comment
    assert submit(db, draft).success


def test_long_comment_is_truncated(db, draft):
    draft["comment"] = "a" * 250
    result = submit(db, draft)
    assert len(store.get_borrow_request(db, result.request_id)["comment"]) == rv.MAX_TEXT_LENGTH


def test_unknown_option_policy(db, draft):
    draft["options"] = {"childSeat": True, "jetpack": True}
    assert submit(db, draft).success

    strict = rv.ValidationSettings(reject_unknown_options=True)
    result = submit(db, draft, settings=strict)
    assert not result.success
    assert "jetpack" in result.error


def test_logged_in_user_is_attached(db, draft):
    result = submit(db, draft, current_user_id=lambda: 7)
    assert store.get_borrow_request(db, result.request_id)["user_id"] == 7


def test_draft_cannot_name_its_owner(db, draft):
    draft["user_id"] = 7
    result = submit(db, draft)
    assert store.get_borrow_request(db, result.request_id)["user_id"] is None

    result = submit(db, draft, current_user_id=lambda: 3)
    assert store.get_borrow_request(db, result.request_id)["user_id"] == 3


def test_identity_lookup_failure_books_as_guest(db, draft):
    def broken_lookup():
        raise RuntimeError("session store offline")

    result = submit(db, draft, current_user_id=broken_lookup)
    assert result.success
    assert store.get_borrow_request(db, result.request_id)["user_id"] is None


def test_unknown_car(db, draft):
    draft["car_id"] = 9999
    result = submit(db, draft)
    assert result.error_kind == ErrorKind.NOT_FOUND


def test_car_out_of_service(db, draft, car_id):
    db.execute("UPDATE Cars SET status = 'maintenance' WHERE id = ?", (car_id,))
    db.commit()
    result = submit(db, draft)
    assert result.error_kind == ErrorKind.VALIDATION
    assert request_count(db) == 0


def test_storage_failure_is_reported(db, draft, monkeypatch):
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "insert_borrow_request", broken)
    result = submit(db, draft)
    assert result.error_kind == ErrorKind.STORAGE
    assert result.error == rv.SAVE_FAILED


def test_settings_from_config():
    settings = rv.ValidationSettings.from_config({"RATE_LIMIT_MAX_REQUESTS": "5", "REJECT_UNKNOWN_OPTIONS": True})
    assert settings.rate_limit_max_requests == 5
    assert settings.rate_limit_window_minutes == 60
    assert settings.reject_unknown_options is True
