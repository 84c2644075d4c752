from __future__ import annotations

import calendar
import io
import json
import logging
import os
import sqlite3
import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv
from flask import (
    Flask,
    current_app,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    send_file,
    session,
    url_for,
)
from werkzeug.datastructures import MultiDict
from werkzeug.security import check_password_hash, generate_password_hash

from aggregation import ALL_OBJECTS, ChartData, Window, build_chart, pie_slice_paths, share
from export import EXPORT_MIMETYPE, export_delimited, export_filename, report_totals
from logging_config import setup_logging
from mailer import MailDeliveryError, SmtpSettings, prepare_smtp_settings, send_report
from reports import KeyValueReportRepository, SavedReport

BASE_DIR = Path(__file__).resolve().parent
DATABASE_PATH = BASE_DIR / "workreport.db"
SUGGESTION_LIMIT = 5
SUGGESTION_FIELDS = ("object", "location")
MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

logger = logging.getLogger(__name__)


def create_app(test_config: Optional[Mapping[str, object]] = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=os.getenv("WORKREPORT_SECRET_KEY", "change-me"),
        DATABASE=os.getenv("WORKREPORT_DATABASE", str(DATABASE_PATH)),
        LOG_DIR=os.getenv("WORKREPORT_LOG_DIR", ""),
    )
    if test_config:
        app.config.update(test_config)

    setup_logging(log_dir=app.config["LOG_DIR"] or None)
    app.jinja_env.filters["amount"] = lambda value: f"{value:.2f}"

    Path(app.config["DATABASE"]).parent.mkdir(parents=True, exist_ok=True)

    @app.before_request
    def load_logged_in_user() -> None:
        g.db = get_db()
        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_user_by_id(user_id)

    @app.teardown_appcontext
    def close_db(exception: Optional[BaseException]) -> None:  # pragma: no cover - teardown
        db = g.pop("db", None)
        if db is not None:
            db.close()

    register_routes(app)
    with app.app_context():
        init_db()
    logger.info("Work report app ready (database %s)", app.config["DATABASE"])
    return app


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        conn = sqlite3.connect(current_app.config["DATABASE"])
        conn.row_factory = sqlite3.Row
        g.db = conn
    return g.db


def init_db() -> None:
    conn = sqlite3.connect(current_app.config["DATABASE"])
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS key_value_store (
                user_id INTEGER NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY(user_id, key),
                FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS user_settings (
                user_id INTEGER PRIMARY KEY,
                smtp_config TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );
            """
        )
        conn.commit()
    finally:
        conn.close()


def get_user_by_id(user_id: int) -> Optional[sqlite3.Row]:
    return g.db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def report_repository() -> KeyValueReportRepository:
    return KeyValueReportRepository(g.db, g.user["id"])


def register_routes(app: Flask) -> None:
    @app.route("/")
    def index():
        if g.user:
            return redirect(url_for("dashboard"))
        return redirect(url_for("login"))

    @app.route("/register", methods=["GET", "POST"])
    def register():
        if request.method == "POST":
            email = request.form.get("email", "").strip().lower()
            name = request.form.get("name", "").strip()
            password = request.form.get("password", "")

            error = None
            if not email:
                error = "Email is required."
            elif not name:
                error = "Name is required."
            elif not password:
                error = "Password is required."
            elif user_exists(email):
                error = "Email already registered."

            if error:
                flash(error, "error")
            else:
                g.db.execute(
                    "INSERT INTO users (email, name, password_hash, created_at) VALUES (?, ?, ?, ?)",
                    (email, name, generate_password_hash(password), utc_timestamp()),
                )
                g.db.commit()
                logger.info("Registered user %s", email)
                flash("Registration successful. Please log in.", "success")
                return redirect(url_for("login"))

        return render_template("register.html")

    @app.route("/login", methods=["GET", "POST"])
    def login():
        if request.method == "POST":
            email = request.form.get("email", "").strip().lower()
            password = request.form.get("password", "")

            user = g.db.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
            if user is None or not check_password_hash(user["password_hash"], password):
                logger.warning("Failed login for %s", email)
                flash("Invalid email or password.", "error")
            else:
                session.clear()
                session["user_id"] = user["id"]
                return redirect(url_for("dashboard"))

        return render_template("login.html")

    @app.route("/logout")
    def logout():
        session.clear()
        return redirect(url_for("login"))

    @app.route("/dashboard")
    def dashboard():
        if g.user is None:
            return redirect(url_for("login"))

        reports = report_repository().list()
        rows = [
            {"report": report, "totals": report_totals(report.entries)}
            for report in reversed(reports)
        ]
        return render_template("dashboard.html", user=g.user, rows=rows)

    @app.route("/diagrams")
    def diagrams():
        if g.user is None:
            return redirect(url_for("login"))

        error, window, selected = parse_chart_args(request.args)
        if error:
            flash(error, "error")
            window, selected = Window.MONTH, ALL_OBJECTS
        chart = build_chart(report_repository().list(), window, selected)
        return render_template(
            "diagrams.html",
            window=window.value,
            windows=[option.value for option in Window],
            chart=chart,
            legend=chart_payload(chart, window)["slices"],
            paths=pie_slice_paths(chart.slices, chart.total),
        )

    @app.route("/api/chart", methods=["GET"])
    def api_chart():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        error, window, selected = parse_chart_args(request.args)
        if error:
            return jsonify({"error": error}), 400
        chart = build_chart(report_repository().list(), window, selected)
        return jsonify(chart_payload(chart, window))

    @app.route("/api/reports", methods=["GET"])
    def api_reports():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401
        return jsonify([report.to_dict() for report in report_repository().list()])

    @app.route("/api/reports", methods=["POST"])
    def create_report():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        error, report = prepare_report_payload(request.get_json(silent=True) or {}, str(uuid.uuid4()))
        if error:
            return jsonify({"error": error}), 400

        report = report.stamped(datetime.now())
        report_repository().put(report)
        return jsonify(report.to_dict()), 201

    @app.route("/api/reports/<report_id>", methods=["GET"])
    def get_report(report_id: str):
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        report = report_repository().get(report_id)
        if report is None:
            return jsonify({"error": "Report not found"}), 404
        return jsonify(report.to_dict())

    @app.route("/api/reports/<report_id>", methods=["PUT"])
    def update_report(report_id: str):
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        repository = report_repository()
        if repository.get(report_id) is None:
            return jsonify({"error": "Report not found"}), 404

        error, report = prepare_report_payload(request.get_json(silent=True) or {}, report_id)
        if error:
            return jsonify({"error": error}), 400

        report = report.stamped(datetime.now())
        repository.put(report)
        return jsonify(report.to_dict())

    @app.route("/api/reports/<report_id>", methods=["DELETE"])
    def delete_report(report_id: str):
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        if not report_repository().delete(report_id):
            return jsonify({"error": "Report not found"}), 404
        return jsonify({"status": "ok"})

    @app.route("/reports/<report_id>/delete", methods=["POST"])
    def delete_report_form(report_id: str):
        if g.user is None:
            return redirect(url_for("login"))

        if report_repository().delete(report_id):
            flash("Report deleted.", "success")
        else:
            flash("Report not found.", "error")
        return redirect(url_for("dashboard"))

    @app.route("/reports/<report_id>/export", methods=["GET"])
    def export_report(report_id: str):
        if g.user is None:
            return redirect(url_for("login"))

        report = report_repository().get(report_id)
        if report is None:
            flash("Report not found.", "error")
            return redirect(url_for("dashboard"))

        return send_file(
            io.BytesIO(export_delimited(report).encode("utf-8")),
            as_attachment=True,
            download_name=export_filename(report),
            mimetype=EXPORT_MIMETYPE,
        )

    @app.route("/api/reports/<report_id>/email", methods=["POST"])
    def api_email_report(report_id: str):
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        error, status = email_report(report_id)
        if error:
            return jsonify({"error": error}), status
        return jsonify({"status": "sent"})

    @app.route("/reports/<report_id>/email", methods=["POST"])
    def email_report_form(report_id: str):
        if g.user is None:
            return redirect(url_for("login"))

        error, _ = email_report(report_id)
        if error:
            flash(error, "error")
        else:
            flash("Report sent.", "success")
        return redirect(url_for("dashboard"))

    @app.route("/settings/email", methods=["GET", "POST"])
    def email_settings():
        if g.user is None:
            return redirect(url_for("login"))

        existing = load_smtp_settings(g.user["id"])
        if request.method == "POST":
            error, settings = prepare_smtp_settings(request.form, existing, tls_default=False)
            if error:
                flash(error, "error")
            else:
                save_smtp_settings(g.user["id"], settings)
                flash("Email settings saved.", "success")
                return redirect(url_for("email_settings"))

        return render_template("email_settings.html", settings=existing)

    @app.route("/api/settings/email", methods=["GET"])
    def api_email_settings():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        settings = load_smtp_settings(g.user["id"])
        if settings is None:
            return jsonify({"error": "Email settings not configured"}), 404
        payload = settings.to_dict()
        payload.pop("password")
        return jsonify(payload)

    @app.route("/api/settings/email", methods=["PUT"])
    def update_email_settings():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        existing = load_smtp_settings(g.user["id"])
        error, settings = prepare_smtp_settings(request.get_json(silent=True) or {}, existing)
        if error:
            return jsonify({"error": error}), 400
        save_smtp_settings(g.user["id"], settings)
        payload = settings.to_dict()
        payload.pop("password")
        return jsonify(payload)

    @app.route("/api/suggestions", methods=["GET"])
    def api_suggestions():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        field = request.args.get("field", "object")
        if field not in SUGGESTION_FIELDS:
            return jsonify({"error": "Unknown field"}), 400
        query = request.args.get("q", "")
        return jsonify(suggest_values(report_repository().list(), field, query))

    @app.route("/api/periods", methods=["GET"])
    def api_periods():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        anchor = request.args.get("date")
        try:
            anchor_date = datetime.strptime(anchor, "%Y-%m-%d").date() if anchor else date.today()
        except ValueError:
            return jsonify({"error": "Invalid date"}), 400
        first, second = half_month_periods(anchor_date)
        return jsonify({"first": first, "second": second})


def user_exists(email: str) -> bool:
    row = g.db.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone()
    return row is not None


def prepare_report_payload(
    payload: Mapping[str, object], report_id: str
) -> Tuple[Optional[str], Optional[SavedReport]]:
    if not isinstance(payload, Mapping):
        return "Invalid payload.", None
    entries = payload.get("entries", [])
    if not isinstance(entries, list) or not all(isinstance(item, Mapping) for item in entries):
        return "Entries must be a list of objects.", None
    for key in ("name", "period"):
        value = payload.get(key)
        if value is not None and not isinstance(value, str):
            return f"{key.capitalize()} must be text.", None

    report = SavedReport.from_dict(
        {
            "id": report_id,
            "name": payload.get("name"),
            "period": payload.get("period"),
            "entries": entries,
        }
    )
    return None, report


def parse_chart_args(args: MultiDict) -> Tuple[Optional[str], Window, object]:
    raw_window = args.get("window", Window.MONTH.value)
    try:
        window = Window(raw_window)
    except ValueError:
        return f"Unknown window: {raw_window}", Window.MONTH, ALL_OBJECTS
    objects = [value for value in args.getlist("object") if value]
    return None, window, (objects or ALL_OBJECTS)


def chart_payload(chart: ChartData, window: Window) -> Dict[str, object]:
    return {
        "window": window.value,
        "slices": [
            {
                "object": item.object,
                "hours": item.hours,
                "color": item.color,
                "percent": round(share(item.hours, chart.total) * 100, 1),
            }
            for item in chart.slices
        ],
        "total": chart.total,
        "unfiltered_total": chart.unfiltered_total,
        "objects": chart.objects,
        "selected": [name for name in chart.objects if name in chart.selected],
    }


def load_smtp_settings(user_id: int) -> Optional[SmtpSettings]:
    row = g.db.execute("SELECT smtp_config FROM user_settings WHERE user_id = ?", (user_id,)).fetchone()
    if row is None:
        return None
    try:
        stored = json.loads(row["smtp_config"])
        return SmtpSettings(**stored)
    except (ValueError, TypeError):
        logger.warning("Ignoring unreadable email settings for user %s", user_id)
        return None


def save_smtp_settings(user_id: int, settings: SmtpSettings) -> None:
    g.db.execute(
        """
        INSERT INTO user_settings (user_id, smtp_config, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET smtp_config = excluded.smtp_config, updated_at = excluded.updated_at
        """,
        (user_id, json.dumps(settings.to_dict()), utc_timestamp()),
    )
    g.db.commit()
    logger.info("Saved email settings for user %s", user_id)


def email_report(report_id: str) -> Tuple[Optional[str], int]:
    settings = load_smtp_settings(g.user["id"])
    if settings is None:
        return "Please configure your email settings first.", 400
    report = report_repository().get(report_id)
    if report is None:
        return "Report not found.", 404
    if not report.entries:
        return "There is no data to send.", 400
    try:
        send_report(report, settings)
    except MailDeliveryError:
        logger.exception("Sending report %s failed", report_id)
        return "Sending the email failed. Please check your email settings.", 502
    return None, 200


def suggest_values(reports: List[SavedReport], field: str, query: str, limit: int = SUGGESTION_LIMIT) -> List[str]:
    needle = query.strip().lower()
    if not needle:
        return []
    seen: List[str] = []
    for report in reports:
        for entry in report.entries:
            value = getattr(entry, field)
            if value and needle in value.lower() and value not in seen:
                seen.append(value)
                if len(seen) >= limit:
                    return seen
    return seen


def half_month_periods(anchor: date) -> Tuple[str, str]:
    month_name = MONTH_NAMES[anchor.month - 1]
    last_day = calendar.monthrange(anchor.year, anchor.month)[1]
    first = f"01. - 15. {month_name} {anchor.year}"
    second = f"16. - {last_day}. {month_name} {anchor.year}"
    return first, second


if __name__ == "__main__":
    application = create_app()
    application.run(debug=True, host="0.0.0.0", port=5001)
