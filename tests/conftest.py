import pytest

import store

CAR = {
    "make": "Toyota",
    "model": "Corolla",
    "name": "Toyota Corolla",
    "year": 2022,
    "seats": 5,
    "price_2_4_days": 1000,
    "price_5_15_days": 800,
    "price_16_30_days": 600,
    "price_over_30_days": 500,
    "discount_percentage": None,
    "status": "available",
}


@pytest.fixture
def db(tmp_path):
    conn = store.connect(tmp_path / "bookings.db")
    store.create_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def car_id(db):
    return store.insert_car(db, CAR)


@pytest.fixture
def make_request(db, car_id):
    """Insert a borrow request straight into the store, bypassing validation."""

    def _make(start_date="2030-06-01", end_date="2030-06-05", status=store.REQUEST_PENDING, **overrides):
        now_iso = store.naive_utcnow_iso()
        values = {
            "car_id": car_id,
            "customer_name": "Ada Lovelace",
            "customer_first_name": "Ada",
            "customer_last_name": "Lovelace",
            "customer_email": "ada@example.com",
            "customer_phone": "+44 20 7946 0000",
            "start_date": start_date,
            "start_time": "09:00",
            "end_date": end_date,
            "end_time": "09:00",
            "comment": "",
            "options": {},
            "price_per_day": 800,
            "total_amount": 3200,
            "status": status,
            "requested_at": now_iso,
            "updated_at": now_iso,
        }
        values.update(overrides)
        return store.insert_borrow_request(db, values)

    return _make


@pytest.fixture
def make_rental(db, car_id):
    def _make(start_date, end_date, status=store.RENTAL_APPROVED, request_id=None, **overrides):
        now_iso = store.naive_utcnow_iso()
        values = {
            "request_id": request_id,
            "car_id": car_id,
            "start_date": start_date,
            "start_time": "09:00",
            "end_date": end_date,
            "end_time": "09:00",
            "price_per_day": 800,
            "subtotal": 3200,
            "total_amount": 3200,
            "rental_status": status,
            "created_at": now_iso,
            "updated_at": now_iso,
        }
        values.update(overrides)
        return store.insert_rental(db, values)

    return _make


@pytest.fixture
def client(tmp_path, monkeypatch):
    from app import app, init_db

    monkeypatch.setitem(app.config, "DATABASE", str(tmp_path / "app.db"))
    monkeypatch.setitem(app.config, "TESTING", True)
    with app.app_context():
        init_db()
    return app.test_client()


@pytest.fixture
def app_db(client):
    from app import app

    conn = store.connect(app.config["DATABASE"])
    yield conn
    conn.close()


@pytest.fixture
def app_car_id(app_db):
    return store.insert_car(app_db, CAR)


@pytest.fixture
def admin_client(client, app_db):
    admin_id = store.insert_user(app_db, "admin@example.com", "Grace", "Hopper", is_admin=True)
    with client.session_transaction() as sess:
        sess["user_id"] = admin_id
    return client
