"""Car rental booking service: JSON endpoints over the booking engine."""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Callable, Dict, Optional

from flask import Flask, abort, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

import availability
import lifecycle
import store
from pricing import calculate_price_summary, parse_date
from rental_options import RENTAL_OPTIONS, OptionsSelection, options_by_category
from request_validation import ValidationSettings, create_user_borrow_request
from results import ErrorKind, OperationResult
from status_engine import StatusScheduler, process_status_transitions


DATABASE = Path(__file__).with_name("car_rental.db")
MAX_PAGE_SIZE = 100
TRUE_VALUES = {"1", "true", "yes", "on"}


def env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in TRUE_VALUES


app = Flask(__name__)
app.config.update(
    SECRET_KEY=os.environ.get("CARRENTAL_SECRET_KEY", "replace-with-a-secure-random-value"),
    DATABASE=os.environ.get("CARRENTAL_DB_PATH", str(DATABASE)),
    STATUS_SWEEP_INTERVAL=float(os.environ.get("CARRENTAL_SWEEP_INTERVAL", "60")),
    AVAILABILITY_FAIL_OPEN=env_flag("CARRENTAL_AVAILABILITY_FAIL_OPEN", True),
    REJECT_UNKNOWN_OPTIONS=env_flag("CARRENTAL_REJECT_UNKNOWN_OPTIONS", False),
    RATE_LIMIT_MAX_REQUESTS=int(os.environ.get("CARRENTAL_RATE_LIMIT_MAX_REQUESTS", "3")),
    RATE_LIMIT_WINDOW_MINUTES=int(os.environ.get("CARRENTAL_RATE_LIMIT_WINDOW_MINUTES", "60")),
    MAX_ADVANCE_MONTHS=int(os.environ.get("CARRENTAL_MAX_ADVANCE_MONTHS", "6")),
    MAX_CONTENT_LENGTH=1024 * 1024,  # 1 MB of JSON per request
)
app.logger.setLevel("INFO")

scheduler: Optional[StatusScheduler] = None


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        g.db = store.connect(app.config["DATABASE"])
    return g.db


@app.teardown_appcontext
def close_db(_: BaseException | None) -> None:
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db() -> None:
    store.create_schema(get_db())


@app.cli.command("init-db")
def init_db_command() -> None:
    """Create the booking tables if they do not exist yet."""
    init_db()
    print(f"Initialized the database at {app.config['DATABASE']}.")


@app.before_request
def load_logged_in_user() -> None:
    user_id = session.get("user_id")
    if user_id is None:
        g.user = None
        return
    g.user = store.get_user(get_db(), user_id)


def current_user_id() -> Optional[int]:
    user = g.get("user")
    if not user:
        return None
    return int(user["id"])


def admin_required(view: Callable) -> Callable:
    def wrapped(*args, **kwargs):
        if g.user is None or not g.user.get("is_admin"):
            abort(403)
        return view(*args, **kwargs)

    wrapped.__name__ = view.__name__
    return wrapped


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return jsonify({"success": False, "error": error.description}), error.code


@app.errorhandler(sqlite3.Error)
def handle_storage_error(error: sqlite3.Error):
    app.logger.error("storage error on %s %s: %s", request.method, request.path, error)
    return jsonify({"success": False, "error": lifecycle.STORE_UNAVAILABLE, "errorKind": ErrorKind.STORAGE}), 503


def respond(result: OperationResult, success_status: int = 200):
    if result.success:
        return jsonify(result.as_dict()), success_status
    if result.error_kind == ErrorKind.INCONSISTENCY:
        app.logger.error(
            "operation left inconsistent state request_id=%s rental_id=%s: %s",
            result.request_id,
            result.rental_id,
            result.error,
        )
    return jsonify(result.as_dict()), result.http_status


def json_body() -> Dict[str, object]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        abort(400, description="Expected a JSON object")
    return data


def int_arg(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        abort(400, description=f"{name} must be a number")


def page_args() -> Dict[str, object]:
    page_size = int_arg("page_size", 20)
    paging: Dict[str, object] = {
        "sort_order": "asc" if request.args.get("sort_order") == "asc" else "desc",
        "page": max(int_arg("page", 1), 1),
        "page_size": min(max(page_size, 1), MAX_PAGE_SIZE),
    }
    if request.args.get("sort_by"):
        paging["sort_by"] = request.args["sort_by"]
    return paging


def load_car(car_id: int) -> Dict[str, object]:
    car = store.get_car(get_db(), car_id)
    if car is None or car.get("status") in ("hidden", "deleted"):
        abort(404, description="Car not found")
    return car


def options_arg(reject_unknown: bool) -> OptionsSelection:
    selected = request.args.getlist("option")
    raw = selected or request.args.get("options")
    try:
        return OptionsSelection.from_mapping(raw, reject_unknown)
    except ValueError as exc:
        abort(400, description=str(exc))


def start_scheduler() -> StatusScheduler:
    global scheduler
    if scheduler is None:
        scheduler = StatusScheduler(app.config["DATABASE"], app.config["STATUS_SWEEP_INTERVAL"])
    scheduler.start()
    return scheduler


def stop_scheduler() -> None:
    global scheduler
    if scheduler is not None:
        scheduler.stop()
        scheduler = None


# Catalog and quotes


@app.route("/api/options")
def list_options():
    return jsonify(
        {
            "success": True,
            "options": [option.as_dict() for option in RENTAL_OPTIONS],
            "categories": {
                category: [option.id for option in options]
                for category, options in options_by_category().items()
            },
        }
    )


@app.route("/api/cars/<int:car_id>/quote")
def quote_car(car_id: int):
    car = load_car(car_id)
    options = options_arg(app.config["REJECT_UNKNOWN_OPTIONS"])
    dates = {
        "start_date": request.args.get("start_date", ""),
        "start_time": request.args.get("start_time", ""),
        "end_date": request.args.get("end_date", ""),
        "end_time": request.args.get("end_time", ""),
    }
    summary = calculate_price_summary(car, dates, options)
    if summary is None:
        abort(400, description="Please choose valid rental dates")
    return jsonify({"success": True, "carId": car_id, "options": options.selected(), "quote": summary.as_dict()})


@app.route("/api/cars/<int:car_id>/availability")
def car_availability(car_id: int):
    load_car(car_id)
    try:
        day = parse_date(request.args.get("date", ""))
        return_day = parse_date(request.args["return_date"]) if request.args.get("return_date") else None
    except ValueError:
        abort(400, description="Dates must use the YYYY-MM-DD format")

    db = get_db()
    fail_open = app.config["AVAILABILITY_FAIL_OPEN"]
    next_start = availability.get_earliest_future_rental_start(db, day, car_id)
    payload = {
        "success": True,
        "carId": car_id,
        "date": day.isoformat(),
        "available": not availability.is_date_unavailable(db, day, car_id, fail_open=fail_open),
        "nextBookingStart": next_start.isoformat() if next_start else None,
        "message": availability.booking_message(next_start),
    }
    if return_day is not None:
        payload["returnBlocked"] = availability.is_return_date_blocked(db, day, return_day, car_id)
    return jsonify(payload)


# Customer requests


@app.route("/api/requests", methods=["POST"])
def submit_borrow_request():
    result = create_user_borrow_request(
        get_db(),
        json_body(),
        current_user_id=current_user_id,
        settings=ValidationSettings.from_config(app.config),
    )
    return respond(result, success_status=201)


# Admin: requests


@app.route("/api/admin/requests")
@admin_required
def admin_list_requests():
    db = get_db()
    sweep = process_status_transitions(db)
    if sweep.failed:
        app.logger.warning("status sweep before request list had %s failures", sweep.failed)
    paging = page_args()
    rows, total = lifecycle.list_borrow_requests(
        db,
        status=request.args.get("status") or None,
        car_id=int_arg("car_id"),
        customer_email=request.args.get("email") or None,
        **paging,
    )
    return jsonify(
        {"success": True, "requests": rows, "total": total, "page": paging["page"], "pageSize": paging["page_size"]}
    )


@app.route("/api/admin/requests/<int:request_id>", methods=["PATCH"])
@admin_required
def admin_update_request(request_id: int):
    result = lifecycle.update_borrow_request(
        get_db(), request_id, json_body(), reject_unknown_options=app.config["REJECT_UNKNOWN_OPTIONS"]
    )
    return respond(result)


@app.route("/api/admin/requests/<int:request_id>/accept", methods=["POST"])
@admin_required
def admin_accept_request(request_id: int):
    return respond(lifecycle.accept_borrow_request(get_db(), request_id))


@app.route("/api/admin/requests/<int:request_id>/reject", methods=["POST"])
@admin_required
def admin_reject_request(request_id: int):
    data = request.get_json(silent=True) or {}
    reason = data.get("reason") if isinstance(data, dict) else None
    return respond(lifecycle.reject_borrow_request(get_db(), request_id, reason=reason))


@app.route("/api/admin/requests/<int:request_id>/undo-reject", methods=["POST"])
@admin_required
def admin_undo_reject_request(request_id: int):
    return respond(lifecycle.undo_reject_borrow_request(get_db(), request_id))


@app.route("/api/admin/requests/<int:request_id>/set-pending", methods=["POST"])
@admin_required
def admin_set_request_pending(request_id: int):
    return respond(lifecycle.set_request_pending(get_db(), request_id))


@app.route("/api/admin/requests/<int:request_id>/cancel", methods=["POST"])
@admin_required
def admin_cancel_request(request_id: int):
    return respond(lifecycle.cancel_accepted_request(get_db(), request_id))


# Admin: rentals


@app.route("/api/admin/rentals", methods=["GET", "POST"])
@admin_required
def admin_rentals():
    db = get_db()
    if request.method == "POST":
        return respond(lifecycle.create_rental_manually(db, json_body()), success_status=201)

    paging = page_args()
    month = request.args.get("month") or None
    try:
        rows, total = lifecycle.list_rentals(
            db,
            month=month,
            car_id=int_arg("car_id"),
            status=request.args.get("status") or None,
            user_id=int_arg("user_id"),
            **paging,
        )
    except ValueError:
        abort(400, description="month must use the YYYY-MM format")
    return jsonify(
        {"success": True, "rentals": rows, "total": total, "page": paging["page"], "pageSize": paging["page_size"]}
    )


@app.route("/api/admin/rentals/<int:rental_id>/contract", methods=["POST"])
@admin_required
def admin_rental_contract(rental_id: int):
    return respond(lifecycle.mark_rental_contract(get_db(), rental_id))


@app.route("/api/admin/rentals/<int:rental_id>/cancel", methods=["POST"])
@admin_required
def admin_cancel_rental(rental_id: int):
    return respond(lifecycle.cancel_rental_order(get_db(), rental_id))


@app.route("/api/admin/rentals/<int:rental_id>/restore", methods=["POST"])
@admin_required
def admin_restore_rental(rental_id: int):
    return respond(lifecycle.restore_rental_order(get_db(), rental_id))


@app.route("/api/admin/status-sweep", methods=["POST"])
@admin_required
def admin_status_sweep():
    result = process_status_transitions(get_db())
    app.logger.info(
        "manual status sweep executed=%s activated=%s completed=%s failed=%s user_id=%s",
        result.executed,
        result.activated,
        result.completed,
        result.failed,
        current_user_id(),
    )
    return jsonify(result.as_dict())


def main() -> None:
    with app.app_context():
        init_db()
    start_scheduler()
    try:
        app.run(debug=True, port=5000, use_reloader=False)
    finally:
        stop_scheduler()


if __name__ == "__main__":
    main()
