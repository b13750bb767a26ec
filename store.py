"""sqlite access for the booking tables.

Table names follow the shared booking schema: ``Cars``, ``BorrowRequest`` and
``Rentals``. Every write commits on its own; multi-step operations live in
``lifecycle`` and decide what to do when a later step fails.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

REQUEST_PENDING = "PENDING"
REQUEST_APPROVED = "APPROVED"
REQUEST_REJECTED = "REJECTED"
REQUEST_EXECUTED = "EXECUTED"
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_APPROVED, REQUEST_REJECTED, REQUEST_EXECUTED)

RENTAL_APPROVED = "APPROVED"
RENTAL_CONTRACT = "CONTRACT"
RENTAL_ACTIVE = "ACTIVE"
RENTAL_COMPLETED = "COMPLETED"
RENTAL_CANCELLED = "CANCELLED"
RENTAL_STATUSES = (RENTAL_APPROVED, RENTAL_CONTRACT, RENTAL_ACTIVE, RENTAL_COMPLETED, RENTAL_CANCELLED)
# a car is booked for a day while one of these rentals covers it
BOOKED_RENTAL_STATUSES = (RENTAL_APPROVED, RENTAL_CONTRACT, RENTAL_ACTIVE)

CAR_STATUSES = ("available", "maintenance", "hidden", "deleted")

CAR_COLUMNS = (
    "make",
    "model",
    "name",
    "year",
    "seats",
    "price_2_4_days",
    "price_5_15_days",
    "price_16_30_days",
    "price_over_30_days",
    "discount_percentage",
    "status",
)
REQUEST_COLUMNS = (
    "user_id",
    "car_id",
    "customer_name",
    "customer_first_name",
    "customer_last_name",
    "customer_email",
    "customer_phone",
    "start_date",
    "start_time",
    "end_date",
    "end_time",
    "comment",
    "options",
    "price_per_day",
    "total_amount",
    "status",
    "requested_at",
    "updated_at",
)
RENTAL_COLUMNS = (
    "request_id",
    "user_id",
    "car_id",
    "start_date",
    "start_time",
    "end_date",
    "end_time",
    "price_per_day",
    "subtotal",
    "taxes_fees",
    "additional_taxes",
    "total_amount",
    "rental_status",
    "payment_status",
    "created_at",
    "updated_at",
)
REQUEST_SORT_COLUMNS = ("start_date", "total_amount", "requested_at")
RENTAL_SORT_COLUMNS = ("start_date", "total_amount", "created_at")

SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    phone TEXT DEFAULT '',
    is_admin INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS Cars (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    make TEXT NOT NULL,
    model TEXT NOT NULL,
    name TEXT DEFAULT '',
    year INTEGER,
    seats INTEGER NOT NULL DEFAULT 5,
    price_2_4_days REAL NOT NULL DEFAULT 0,
    price_5_15_days REAL NOT NULL DEFAULT 0,
    price_16_30_days REAL NOT NULL DEFAULT 0,
    price_over_30_days REAL NOT NULL DEFAULT 0,
    discount_percentage REAL,
    status TEXT NOT NULL DEFAULT 'available'
        CHECK(status IN ('available', 'maintenance', 'hidden', 'deleted')),
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS BorrowRequest (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER,
    car_id INTEGER NOT NULL,
    customer_name TEXT NOT NULL DEFAULT '',
    customer_first_name TEXT NOT NULL,
    customer_last_name TEXT NOT NULL,
    customer_email TEXT NOT NULL,
    customer_phone TEXT DEFAULT '',
    start_date TEXT NOT NULL,
    start_time TEXT NOT NULL DEFAULT '',
    end_date TEXT NOT NULL,
    end_time TEXT NOT NULL DEFAULT '',
    comment TEXT DEFAULT '',
    options TEXT NOT NULL DEFAULT '{}',
    price_per_day REAL NOT NULL DEFAULT 0,
    total_amount REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'PENDING'
        CHECK(status IN ('PENDING', 'APPROVED', 'REJECTED', 'EXECUTED')),
    requested_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (car_id) REFERENCES Cars(id)
);

CREATE TABLE IF NOT EXISTS Rentals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id INTEGER,
    user_id INTEGER,
    car_id INTEGER NOT NULL,
    start_date TEXT NOT NULL,
    start_time TEXT NOT NULL DEFAULT '',
    end_date TEXT NOT NULL,
    end_time TEXT NOT NULL DEFAULT '',
    price_per_day REAL NOT NULL DEFAULT 0,
    subtotal REAL NOT NULL DEFAULT 0,
    taxes_fees REAL NOT NULL DEFAULT 0,
    additional_taxes REAL NOT NULL DEFAULT 0,
    total_amount REAL NOT NULL DEFAULT 0,
    rental_status TEXT NOT NULL DEFAULT 'APPROVED'
        CHECK(rental_status IN ('APPROVED', 'CONTRACT', 'ACTIVE', 'COMPLETED', 'CANCELLED')),
    payment_status TEXT NOT NULL DEFAULT 'PENDING',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (car_id) REFERENCES Cars(id),
    FOREIGN KEY (request_id) REFERENCES BorrowRequest(id)
);

CREATE INDEX IF NOT EXISTS idx_requests_status ON BorrowRequest(status);
CREATE INDEX IF NOT EXISTS idx_requests_email ON BorrowRequest(customer_email, requested_at);
CREATE INDEX IF NOT EXISTS idx_rentals_car_status ON Rentals(car_id, rental_status, start_date);
CREATE INDEX IF NOT EXISTS idx_rentals_request ON Rentals(request_id);
"""


def naive_utcnow() -> datetime:
    """Return a timezone-naive UTC timestamp compatible with stored audit stamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utcnow_iso() -> str:
    return naive_utcnow().isoformat()


def connect(path: Union[str, Path]) -> sqlite3.Connection:
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def create_schema(db: sqlite3.Connection) -> None:
    db.executescript(SCHEMA)
    db.commit()


def row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, object]]:
    if row is None:
        return None
    return dict(row)


def _request_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, object]]:
    data = row_to_dict(row)
    if data is None:
        return None
    try:
        data["options"] = json.loads(data.get("options") or "{}")
    except (TypeError, json.JSONDecodeError):
        data["options"] = {}
    return data


def _pick(values: Mapping[str, object], allowed: Sequence[str]) -> Dict[str, object]:
    return {key: values[key] for key in allowed if key in values}


def _insert(db: sqlite3.Connection, table: str, values: Mapping[str, object]) -> int:
    columns = list(values)
    placeholders = ", ".join("?" for _ in columns)
    cursor = db.execute(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
        tuple(values[column] for column in columns),
    )
    db.commit()
    return int(cursor.lastrowid)


def _update(
    db: sqlite3.Connection,
    table: str,
    record_id: int,
    values: Mapping[str, object],
    status_column: Optional[str] = None,
    expected_statuses: Optional[Iterable[str]] = None,
) -> int:
    if not values:
        return 0
    assignments = ", ".join(f"{column} = ?" for column in values)
    params: List[object] = list(values.values())
    sql = f"UPDATE {table} SET {assignments} WHERE id = ?"
    params.append(record_id)
    if status_column and expected_statuses is not None:
        statuses = list(expected_statuses)
        sql += f" AND {status_column} IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)
    cursor = db.execute(sql, params)
    db.commit()
    return cursor.rowcount


# Users


def insert_user(db: sqlite3.Connection, email: str, first_name: str = "", last_name: str = "",
                phone: str = "", is_admin: bool = False) -> int:
    return _insert(
        db,
        "users",
        {
            "email": email.strip().lower(),
            "first_name": first_name,
            "last_name": last_name,
            "phone": phone,
            "is_admin": 1 if is_admin else 0,
        },
    )


def get_user(db: sqlite3.Connection, user_id: int) -> Optional[Dict[str, object]]:
    return row_to_dict(
        db.execute(
            "SELECT id, email, first_name, last_name, phone, is_admin FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
    )


# Cars


def insert_car(db: sqlite3.Connection, car: Mapping[str, object]) -> int:
    values = _pick(car, CAR_COLUMNS)
    if "id" in car:
        values = {"id": car["id"], **values}
    return _insert(db, "Cars", values)


def upsert_cars(db: sqlite3.Connection, cars: Iterable[Mapping[str, object]]) -> int:
    count = 0
    now_iso = naive_utcnow_iso()
    with db:
        for car in cars:
            values = {"id": car["id"], **_pick(car, CAR_COLUMNS), "updated_at": now_iso}
            columns = list(values)
            updates = ", ".join(f"{column} = excluded.{column}" for column in columns if column != "id")
            db.execute(
                f"""
                INSERT INTO Cars ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})
                ON CONFLICT(id) DO UPDATE SET {updates}
                """,
                tuple(values[column] for column in columns),
            )
            count += 1
    return count


def get_car(db: sqlite3.Connection, car_id: int) -> Optional[Dict[str, object]]:
    return row_to_dict(db.execute("SELECT * FROM Cars WHERE id = ?", (car_id,)).fetchone())


def list_cars(db: sqlite3.Connection, statuses: Sequence[str] = ("available",)) -> List[Dict[str, object]]:
    rows = db.execute(
        f"SELECT * FROM Cars WHERE status IN ({', '.join('?' for _ in statuses)}) ORDER BY id",
        tuple(statuses),
    ).fetchall()
    return [dict(row) for row in rows]


# BorrowRequest


def insert_borrow_request(db: sqlite3.Connection, values: Mapping[str, object]) -> int:
    data = _pick(values, REQUEST_COLUMNS)
    if isinstance(data.get("options"), Mapping):
        data["options"] = json.dumps(data["options"])
    return _insert(db, "BorrowRequest", data)


def get_borrow_request(db: sqlite3.Connection, request_id: int) -> Optional[Dict[str, object]]:
    return _request_dict(db.execute("SELECT * FROM BorrowRequest WHERE id = ?", (request_id,)).fetchone())


def update_borrow_request(
    db: sqlite3.Connection,
    request_id: int,
    values: Mapping[str, object],
    expected_statuses: Optional[Iterable[str]] = None,
) -> int:
    data = _pick(values, REQUEST_COLUMNS)
    if isinstance(data.get("options"), Mapping):
        data["options"] = json.dumps(data["options"])
    return _update(db, "BorrowRequest", request_id, data, "status", expected_statuses)


def count_requests_since(db: sqlite3.Connection, customer_email: str, since_iso: str) -> int:
    return db.execute(
        "SELECT COUNT(*) FROM BorrowRequest WHERE customer_email = ? AND requested_at >= ?",
        (customer_email, since_iso),
    ).fetchone()[0]


def requests_with_status(db: sqlite3.Connection, status: str) -> List[Dict[str, object]]:
    rows = db.execute(
        "SELECT * FROM BorrowRequest WHERE status = ? ORDER BY start_date, start_time, id",
        (status,),
    ).fetchall()
    return [_request_dict(row) for row in rows]


def list_borrow_requests(
    db: sqlite3.Connection,
    status: Optional[str] = None,
    car_id: Optional[int] = None,
    customer_email: Optional[str] = None,
    sort_by: Optional[str] = "requested_at",
    sort_order: str = "desc",
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Dict[str, object]], int]:
    clauses: List[str] = []
    params: List[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if car_id is not None:
        clauses.append("car_id = ?")
        params.append(car_id)
    if customer_email:
        clauses.append("customer_email = ?")
        params.append(customer_email.strip().lower())
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    total = db.execute(f"SELECT COUNT(*) FROM BorrowRequest{where}", params).fetchone()[0]
    order = ""
    if sort_by in REQUEST_SORT_COLUMNS:
        direction = "ASC" if sort_order == "asc" else "DESC"
        order = f" ORDER BY {sort_by} {direction}, id {direction}"
    offset = (max(page, 1) - 1) * page_size
    rows = db.execute(
        f"SELECT * FROM BorrowRequest{where}{order} LIMIT ? OFFSET ?",
        (*params, page_size, offset),
    ).fetchall()
    return [_request_dict(row) for row in rows], total


# Rentals


def rental_from_request(request: Mapping[str, object], rental_status: str = RENTAL_APPROVED) -> Dict[str, object]:
    """Rental row for an accepted request; the quoted total becomes the subtotal."""
    now_iso = naive_utcnow_iso()
    total_amount = float(request.get("total_amount") or 0)
    return {
        "request_id": request["id"],
        "user_id": request.get("user_id"),
        "car_id": request["car_id"],
        "start_date": request["start_date"],
        "start_time": request.get("start_time") or "",
        "end_date": request["end_date"],
        "end_time": request.get("end_time") or "",
        "price_per_day": request.get("price_per_day") or 0,
        "subtotal": total_amount,
        "taxes_fees": 0,
        "additional_taxes": 0,
        "total_amount": total_amount,
        "rental_status": rental_status,
        "payment_status": "PENDING",
        "created_at": now_iso,
        "updated_at": now_iso,
    }


def insert_rental(db: sqlite3.Connection, values: Mapping[str, object]) -> int:
    return _insert(db, "Rentals", _pick(values, RENTAL_COLUMNS))


def get_rental(db: sqlite3.Connection, rental_id: int) -> Optional[Dict[str, object]]:
    return row_to_dict(db.execute("SELECT * FROM Rentals WHERE id = ?", (rental_id,)).fetchone())


def get_rental_by_request(db: sqlite3.Connection, request_id: int) -> Optional[Dict[str, object]]:
    return row_to_dict(
        db.execute(
            "SELECT * FROM Rentals WHERE request_id = ? ORDER BY id DESC LIMIT 1",
            (request_id,),
        ).fetchone()
    )


def update_rental(
    db: sqlite3.Connection,
    rental_id: int,
    values: Mapping[str, object],
    expected_statuses: Optional[Iterable[str]] = None,
) -> int:
    return _update(db, "Rentals", rental_id, _pick(values, RENTAL_COLUMNS), "rental_status", expected_statuses)


def delete_rental(db: sqlite3.Connection, rental_id: int) -> int:
    cursor = db.execute("DELETE FROM Rentals WHERE id = ?", (rental_id,))
    db.commit()
    return cursor.rowcount


def delete_rentals_by_request(db: sqlite3.Connection, request_id: int) -> int:
    cursor = db.execute("DELETE FROM Rentals WHERE request_id = ?", (request_id,))
    db.commit()
    return cursor.rowcount


def rentals_with_status(db: sqlite3.Connection, statuses: Sequence[str]) -> List[Dict[str, object]]:
    rows = db.execute(
        f"SELECT * FROM Rentals WHERE rental_status IN ({', '.join('?' for _ in statuses)}) "
        "ORDER BY start_date, start_time, id",
        tuple(statuses),
    ).fetchall()
    return [dict(row) for row in rows]


def rentals_overlapping(
    db: sqlite3.Connection,
    car_id: int,
    start_date: str,
    end_date: str,
    statuses: Sequence[str] = BOOKED_RENTAL_STATUSES,
    exclude_request_id: Optional[int] = None,
    exclude_rental_id: Optional[int] = None,
) -> List[Dict[str, object]]:
    """Rentals of ``car_id`` whose inclusive day range meets [start_date, end_date]."""
    sql = (
        "SELECT * FROM Rentals WHERE car_id = ? AND start_date <= ? AND end_date >= ? "
        f"AND rental_status IN ({', '.join('?' for _ in statuses)})"
    )
    params: List[object] = [car_id, end_date, start_date, *statuses]
    if exclude_request_id is not None:
        sql += " AND (request_id IS NULL OR request_id != ?)"
        params.append(exclude_request_id)
    if exclude_rental_id is not None:
        sql += " AND id != ?"
        params.append(exclude_rental_id)
    rows = db.execute(sql + " ORDER BY start_date", params).fetchall()
    return [dict(row) for row in rows]


def earliest_rental_start_after(
    db: sqlite3.Connection,
    car_id: int,
    day: str,
    statuses: Sequence[str] = BOOKED_RENTAL_STATUSES,
) -> Optional[str]:
    row = db.execute(
        "SELECT start_date FROM Rentals WHERE car_id = ? AND start_date > ? "
        f"AND rental_status IN ({', '.join('?' for _ in statuses)}) "
        "ORDER BY start_date ASC LIMIT 1",
        (car_id, day, *statuses),
    ).fetchone()
    return row["start_date"] if row else None


def list_rentals(
    db: sqlite3.Connection,
    car_id: Optional[int] = None,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    start_from: Optional[str] = None,
    start_before: Optional[str] = None,
    sort_by: Optional[str] = "start_date",
    sort_order: str = "desc",
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Dict[str, object]], int]:
    clauses: List[str] = []
    params: List[object] = []
    if car_id is not None:
        clauses.append("car_id = ?")
        params.append(car_id)
    if status:
        clauses.append("rental_status = ?")
        params.append(status)
    if user_id is not None:
        clauses.append("user_id = ?")
        params.append(user_id)
    if start_from:
        clauses.append("start_date >= ?")
        params.append(start_from)
    if start_before:
        clauses.append("start_date < ?")
        params.append(start_before)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    total = db.execute(f"SELECT COUNT(*) FROM Rentals{where}", params).fetchone()[0]
    order = ""
    if sort_by in RENTAL_SORT_COLUMNS:
        direction = "ASC" if sort_order == "asc" else "DESC"
        order = f" ORDER BY {sort_by} {direction}, id {direction}"
    offset = (max(page, 1) - 1) * page_size
    rows = db.execute(
        f"SELECT * FROM Rentals{where}{order} LIMIT ? OFFSET ?",
        (*params, page_size, offset),
    ).fetchall()
    return [dict(row) for row in rows], total
