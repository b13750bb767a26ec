"""Load or refresh the Cars table from a fleet CSV export.

Run it with a local file or an http(s) URL:

    python import_fleet.py cars.csv

Rows are upserted by ``id`` so re-running the import updates prices and
statuses without touching requests or rentals that reference the cars.
"""

from __future__ import annotations

import csv
import io
import os
import sys
import urllib.request
from pathlib import Path
from typing import Dict, Iterable, Optional

import store

APP_ROOT = Path(__file__).resolve().parent
DB_PATH = Path(os.environ.get("CARRENTAL_DB_PATH") or APP_ROOT.joinpath("car_rental.db"))

PRICE_COLUMNS = ("price_2_4_days", "price_5_15_days", "price_16_30_days", "price_over_30_days")


def read_source(source: str) -> str:
    if source.startswith(("http://", "https://")):
        print(f"Downloading fleet from {source} …", flush=True)
        with urllib.request.urlopen(source) as response:  # type: ignore[call-arg]
            if response.status != 200:
                raise RuntimeError(f"Failed to download fleet (status {response.status})")
            return response.read().decode("utf-8")
    return Path(source).read_text(encoding="utf-8")


def _number(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    return float(value)


def transform_rows(fleet_csv: str) -> Iterable[Dict[str, object]]:
    """Yield one Cars row per usable CSV line; malformed lines are skipped."""
    reader = csv.DictReader(io.StringIO(fleet_csv))
    for row in reader:
        try:
            car_id = int(row["id"])
        except (KeyError, TypeError, ValueError):
            continue
        make = (row.get("make") or "").strip()
        model = (row.get("model") or "").strip()
        if not make or not model:
            continue
        try:
            prices = {column: _number(row.get(column)) or 0.0 for column in PRICE_COLUMNS}
            discount = _number(row.get("discount_percentage"))
            year = int(row["year"]) if (row.get("year") or "").strip() else None
            seats = int(row["seats"]) if (row.get("seats") or "").strip() else 5
        except ValueError:
            continue
        if any(price < 0 for price in prices.values()):
            continue
        if discount is not None and not 0 <= discount <= 100:
            discount = None
        status = (row.get("status") or "available").strip().lower()
        if status not in store.CAR_STATUSES:
            status = "available"
        yield {
            "id": car_id,
            "make": make,
            "model": model,
            "name": (row.get("name") or f"{make} {model}").strip(),
            "year": year,
            "seats": seats,
            **prices,
            "discount_percentage": discount,
            "status": status,
        }


def main() -> None:
    if len(sys.argv) != 2:
        print("usage: python import_fleet.py <cars.csv | url>", file=sys.stderr)
        sys.exit(2)

    try:
        fleet_csv = read_source(sys.argv[1])
    except (OSError, RuntimeError) as exc:
        print(f"Reading fleet failed: {exc}", file=sys.stderr)
        sys.exit(1)

    rows = list(transform_rows(fleet_csv))
    if not rows:
        print("No cars were found in the fleet file!", file=sys.stderr)
        sys.exit(1)

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = store.connect(DB_PATH)
    try:
        store.create_schema(conn)
        count = store.upsert_cars(conn, rows)
    finally:
        conn.close()

    print(f"Imported {count} cars into {DB_PATH.name}.")


if __name__ == "__main__":
    main()
