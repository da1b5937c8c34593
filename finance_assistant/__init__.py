import base64
import csv
import io
import json
import os
import re
from datetime import date, datetime
from decimal import Decimal

from flask import Flask, Response, g, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from . import store
from .db import DATABASE_ERRORS, INTEGRITY_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .exports import (
    EmailConfigError,
    build_zip,
    dated_file_name,
    get_mime_type,
    is_receipt_file,
    list_receipt_files,
    read_receipt_files,
    send_email,
    zip_folder,
)
from .extraction import DocumentExtractor, ExtractionError


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


class ApiError(Exception):
    """A request the API refuses, reported to the client with ``status``."""

    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status


EXPENSE_CATEGORY_KEYWORDS = [
    (
        "meals",
        [
            "meal", "meals", "food", "restaurant", "lunch", "dinner", "breakfast", "cafe",
            "coffee", "dining", "eat", "nando", "nando's", "mcdonald", "kfc", "subway",
            "greggs", "pret", "starbucks", "costa",
        ],
    ),
    (
        "travel",
        [
            "travel", "train", "bus", "taxi", "uber", "flight", "transport", "fare", "parking",
            "fuel", "petrol", "gas", "underground", "trainline", "lyft", "bolt", "lime", "rail",
        ],
    ),
    (
        "accommodation",
        [
            "hotel", "hotels", "accommodation", "lodging", "stay", "hostel", "airbnb", "room",
            "premier inn", "travelodge", "holiday inn", "marriott", "hilton",
        ],
    ),
]
EXPENSE_CATEGORIES = [name for name, _ in EXPENSE_CATEGORY_KEYWORDS] + ["other"]
CSV_HEADER = "Receipt Name,Description,Date,Amount (GBP)"
FINANCIAL_YEAR_PATTERN = re.compile(r"^(\d{4})/(\d{2})$")


def parse_money(value):
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    cleaned = re.sub(r"[,\s£$€]", "", text)
    if cleaned.upper().startswith("GBP"):
        cleaned = cleaned[3:]
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = f"-{cleaned[1:-1]}"
    try:
        return float(cleaned)
    except ValueError:
        return None


def _coerce_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value!r}") from exc


def get_financial_year(value):
    """UK tax year for a date: 6 April to 5 April, written ``YYYY/YY``."""
    day = _coerce_date(value)
    start = day.year if (day.month, day.day) >= (4, 6) else day.year - 1
    return f"{start}/{(start + 1) % 100:02d}"


def financial_year_period(financial_year):
    match = FINANCIAL_YEAR_PATTERN.match(financial_year or "")
    if not match or int(match.group(2)) != (int(match.group(1)) + 1) % 100:
        raise ValueError(f"Invalid financial year: {financial_year!r}")
    start = int(match.group(1))
    return {
        "year": financial_year,
        "start_date": f"{start:04d}-04-06",
        "end_date": f"{start + 1:04d}-04-05",
    }


def all_financial_years(dates):
    years = set()
    for value in dates:
        try:
            years.add(get_financial_year(value))
        except ValueError:
            continue
    return sorted(years, reverse=True)


def group_by_financial_year(items, key="pay_date"):
    groups = {}
    for item in items:
        try:
            year = get_financial_year(item[key])
        except ValueError:
            continue
        groups.setdefault(year, []).append(item)
    return {year: groups[year] for year in sorted(groups, reverse=True)}


def format_financial_year(financial_year):
    return f"FY {financial_year}"


def categorize_expense(description):
    text = (description or "").lower()
    for category, keywords in EXPENSE_CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return "other"


def expense_category_breakdown(expenses):
    breakdown = {name: {"count": 0, "amount": 0.0} for name in EXPENSE_CATEGORIES}
    for expense in expenses:
        bucket = breakdown[categorize_expense(expense["description"])]
        bucket["count"] += 1
        bucket["amount"] = round(bucket["amount"] + (expense["amount"] or 0), 2)
    return breakdown


def _csv_amount(value):
    return Decimal(str(parse_money(value) or 0)).quantize(Decimal("0.01"))


def generate_expense_csv(expenses, today=None):
    """Render expenses as the report CSV: title line, header, quoted rows, TOTAL line."""
    today = today or date.today()
    output = io.StringIO()
    output.write(f"Expenses Report - Generated on {today.strftime('%d-%m-%Y')}\n\n")
    output.write(CSV_HEADER + "\n")

    writer = csv.writer(output, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    total = Decimal("0.00")
    for expense in expenses:
        amount = _csv_amount(expense.get("amount"))
        writer.writerow(
            [
                str(expense.get("file_name") or ""),
                str(expense.get("description") or ""),
                str(expense.get("date") or ""),
                amount,
            ]
        )
        total += amount

    output.write(f"\nTOTAL,,,{total:.2f}\n")
    return output.getvalue()


def parse_expense_csv(content):
    rows = []
    total = 0.0
    for record in csv.reader(io.StringIO(content or "")):
        if len(record) != 4 or record[0] in ("Receipt Name", "TOTAL"):
            continue
        amount = parse_money(record[3])
        if amount is None:
            continue
        rows.append({"file_name": record[0], "description": record[1], "date": record[2], "amount": amount})
        total += amount
    return rows, round(total, 2)


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "finance_assistant.sqlite"),
        DATABASE_URL=os.environ.get("DATABASE_URL", ""),
        GOOGLE_GENAI_API_KEY=os.environ.get("GOOGLE_GENAI_API_KEY", ""),
        GENAI_MODEL=os.environ.get("GENAI_MODEL", "gemini-2.0-flash"),
        USER_DISPLAY_NAME=os.environ.get("USER_DISPLAY_NAME", "there"),
        EMAIL_HOST=os.environ.get("EMAIL_HOST", ""),
        EMAIL_PORT=int(os.environ.get("EMAIL_PORT", "587")),
        EMAIL_SECURE=os.environ.get("EMAIL_SECURE", "").lower() == "true",
        EMAIL_USER=os.environ.get("EMAIL_USER", ""),
        EMAIL_PASSWORD=os.environ.get("EMAIL_PASSWORD", ""),
        MAX_CONTENT_LENGTH=50 * 1024 * 1024,
        EXTRACTOR=None,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def db_config():
        return parse_database_config(app.config["DATABASE"], app.config.get("DATABASE_URL") or "")

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            config = db_config()
            try:
                g.db = connect_db(config)
            except (*DATABASE_ERRORS, OSError, RuntimeError) as exc:
                message = f"Unable to open {config['backend']} database {config['database_name']}: {exc}"
                print(f"[DB ERROR] {message}")
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        config = db_config()
        try:
            apply_migrations(config)
            app.config["DB_INIT_ERROR"] = None
        except (*DATABASE_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize {config['backend']} database {config['database_name']}: {exc}"
            print(f"[DB INIT ERROR] {message}")
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    def get_extractor():
        extractor = app.config.get("EXTRACTOR")
        if extractor is None:
            extractor = app.extensions.get("document_extractor")
        if extractor is None:
            extractor = DocumentExtractor(
                api_key=app.config.get("GOOGLE_GENAI_API_KEY") or None,
                model_name=app.config["GENAI_MODEL"],
            )
            app.extensions["document_extractor"] = extractor
        return extractor

    def error_response(message, status):
        return jsonify({"success": False, "error": message}), status

    @app.errorhandler(ApiError)
    def handle_api_error(exc):
        app.logger.warning("Rejected %s %s: %s", request.method, request.path, exc.message)
        return error_response(exc.message, exc.status)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return error_response(exc.description, exc.code)

    @app.errorhandler(DatabaseInitError)
    def handle_db_init_error(exc):
        return error_response(str(exc), 500)

    @app.errorhandler(ExtractionError)
    @app.errorhandler(EmailConfigError)
    def handle_service_error(exc):
        app.logger.warning("%s %s failed: %s", request.method, request.path, exc)
        return error_response(str(exc), 500)

    def handle_integrity_error(exc):
        app.logger.warning("Integrity error on %s %s: %s", request.method, request.path, exc)
        return error_response(f"Conflicting record: {exc}", 409)

    def handle_database_error(exc):
        app.logger.exception("Database error on %s %s", request.method, request.path)
        return error_response(f"Database error: {exc}", 500)

    for exc_type in INTEGRITY_ERRORS:
        app.register_error_handler(exc_type, handle_integrity_error)
    for exc_type in DATABASE_ERRORS:
        app.register_error_handler(exc_type, handle_database_error)

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return error_response(str(exc) or "Internal Server Error", 500)

    @app.before_request
    def check_db_ready():
        if app.config.get("DB_INIT_ERROR") and request.endpoint not in ("init_db_route", "db_health"):
            return error_response(app.config["DB_INIT_ERROR"], 500)

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.route("/init-db")
    def init_db_route():
        init_db()
        return jsonify({"success": True, "message": "Database initialized."})

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(db_config()))
        except (*DATABASE_ERRORS, RuntimeError) as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    # Request parsing

    def json_body():
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            raise ApiError("Request body must be a JSON object")
        return body

    def is_missing(value):
        return value is None or (isinstance(value, str) and not value.strip())

    def require(data, *names):
        if any(is_missing(data.get(name)) for name in names):
            if len(names) == 1:
                raise ApiError(f"{names[0]} is required")
            raise ApiError(f"{', '.join(names[:-1])} and {names[-1]} are required")

    def int_value(value, name="id"):
        if is_missing(value):
            raise ApiError(f"{name} is required")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ApiError(f"{name} must be an integer") from None

    def int_arg(name, default):
        raw = request.args.get(name)
        if is_missing(raw):
            return default
        value = int_value(raw, name)
        if value < 1:
            raise ApiError(f"{name} must be positive")
        return value

    def money_value(value, name, required=False):
        if is_missing(value):
            if required:
                raise ApiError(f"{name} is required")
            return None
        amount = parse_money(value)
        if amount is None:
            raise ApiError(f"{name} must be a number")
        return amount

    def collect_updates(body, required_text=(), text_fields=(), required_money=(), optional_money=()):
        updates = {}
        for name in required_text:
            if name in body:
                if is_missing(body[name]):
                    raise ApiError(f"{name} is required")
                updates[name] = body[name]
        for name in text_fields:
            if name in body:
                updates[name] = body[name]
        for name in required_money:
            if name in body:
                updates[name] = money_value(body[name], name, required=True)
        for name in optional_money:
            if name in body:
                updates[name] = money_value(body[name], name)
        return updates

    def uploaded_documents(field):
        documents = []
        for upload in request.files.getlist(field):
            if not upload or not upload.filename:
                continue
            name = os.path.basename(upload.filename.replace("\\", "/"))
            documents.append(
                {
                    "name": name,
                    "mime_type": get_mime_type(name) if is_receipt_file(name) else (upload.mimetype or get_mime_type(name)),
                    "data": upload.read(),
                }
            )
        return documents

    def require_multipart():
        if request.mimetype != "multipart/form-data":
            raise ApiError("Unsupported Content-Type", 415)

    # Document bookkeeping shared by the processing endpoints

    def register_documents(db, documents, assistant_type):
        ids = []
        for document in documents:
            document_id = store.create_document(
                db,
                file_name=document["name"],
                file_type=document["mime_type"],
                assistant_type=assistant_type,
                file_path=document.get("path"),
                file_size=len(document["data"]),
            )
            store.update_document_status(db, document_id, "processing")
            ids.append(document_id)
        return ids

    def record_extraction(db, document_ids, results, date_key):
        for document_id, result in zip(document_ids, results):
            failed = result.get(date_key) == "Error"
            store.store_document_content(
                db,
                document_id,
                content_type="extracted_json",
                content=json.dumps(result),
                extracted_data=None if failed else result,
            )
            store.update_document_status(db, document_id, "error" if failed else "completed")

    # Pensions

    @app.route("/api/pensions", methods=("GET", "POST", "PUT", "DELETE"))
    def pensions_api():
        db = get_db()

        if request.method == "GET":
            action = request.args.get("action")
            if action == "stats":
                return jsonify({"success": True, "stats": store.pension_stats(db)})
            if action == "byId":
                pension = store.get_pension(db, int_value(request.args.get("id"), "id parameter"))
                if pension is None:
                    raise ApiError("Pension not found", 404)
                return jsonify({"success": True, "pension": pension})
            return jsonify({"success": True, "pensions": store.list_pensions(db)})

        if request.method == "POST":
            body = json_body()
            require(body, "name", "amount")
            pension_id = store.create_pension(
                db,
                {
                    "name": body["name"],
                    "url": body.get("url"),
                    "amount": money_value(body["amount"], "amount", required=True),
                    "notes": body.get("notes"),
                },
            )
            app.logger.info("Created pension id=%s", pension_id)
            return jsonify({"success": True, "pensionId": pension_id, "message": "Pension created successfully"})

        if request.method == "PUT":
            body = json_body()
            pension_id = int_value(body.get("id"))
            updates = collect_updates(
                body,
                required_text=("name",),
                text_fields=("url", "notes"),
                required_money=("amount",),
            )
            if not store.update_pension(db, pension_id, updates):
                raise ApiError("Pension not found", 404)
            app.logger.info("Updated pension id=%s fields=%s", pension_id, sorted(updates))
            return jsonify({"success": True, "message": "Pension updated successfully"})

        pension_id = int_value(request.args.get("id"), "id parameter")
        store.delete_pension(db, pension_id)
        app.logger.info("Deleted pension id=%s", pension_id)
        return jsonify({"success": True, "message": "Pension deleted successfully"})

    # Bank accounts

    @app.route("/api/bank-accounts", methods=("GET", "POST", "PUT", "DELETE"))
    def bank_accounts_api():
        db = get_db()

        if request.method == "GET":
            action = request.args.get("action")
            if action == "stats":
                return jsonify({"success": True, "stats": store.bank_account_stats(db)})
            if action == "byId":
                account = store.get_bank_account(db, int_value(request.args.get("id"), "id parameter"))
                if account is None:
                    raise ApiError("Bank account not found", 404)
                return jsonify({"success": True, "account": account})
            if action == "byBank":
                bank = request.args.get("bank")
                if is_missing(bank):
                    raise ApiError("bank parameter is required")
                return jsonify({"success": True, "accounts": store.bank_accounts_by_bank(db, bank)})
            return jsonify({"success": True, "accounts": store.list_bank_accounts(db)})

        if request.method == "POST":
            body = json_body()
            require(body, "name", "bank", "amount")
            account_id = store.create_bank_account(
                db,
                {
                    "name": body["name"],
                    "bank": body["bank"],
                    "interest_rate": money_value(body.get("interest_rate"), "interest_rate"),
                    "amount": money_value(body["amount"], "amount", required=True),
                    "notes": body.get("notes"),
                },
            )
            app.logger.info("Created bank account id=%s", account_id)
            return jsonify({"success": True, "accountId": account_id, "message": "Bank account created successfully"})

        if request.method == "PUT":
            body = json_body()
            account_id = int_value(body.get("id"))
            updates = collect_updates(
                body,
                required_text=("name", "bank"),
                text_fields=("notes",),
                required_money=("amount",),
                optional_money=("interest_rate",),
            )
            if not store.update_bank_account(db, account_id, updates):
                raise ApiError("Bank account not found", 404)
            app.logger.info("Updated bank account id=%s fields=%s", account_id, sorted(updates))
            return jsonify({"success": True, "message": "Bank account updated successfully"})

        account_id = int_value(request.args.get("id"), "id parameter")
        store.delete_bank_account(db, account_id)
        app.logger.info("Deleted bank account id=%s", account_id)
        return jsonify({"success": True, "message": "Bank account deleted successfully"})

    # Payslips

    payslip_money_fields = (
        "gross_pay",
        "tax_paid",
        "ni_paid",
        "pension_contribution",
        "other_deductions",
        "ytd_taxable_pay",
        "ytd_taxable_ni_pay",
        "ytd_paye_tax",
        "ytd_ni",
    )

    @app.route("/api/payslips", methods=("GET", "POST", "PUT", "DELETE"))
    def payslips_api():
        db = get_db()

        if request.method == "GET":
            action = request.args.get("action")
            if action == "stats":
                return jsonify({"success": True, "stats": store.payslip_stats(db)})
            if action == "ytd":
                year = int_value(request.args.get("year"), "year parameter")
                return jsonify({"success": True, "stats": store.payslip_year_to_date(db, year)})
            if action == "byId":
                payslip = store.get_payslip(db, int_value(request.args.get("id"), "id parameter"))
                if payslip is None:
                    raise ApiError("Payslip not found", 404)
                return jsonify({"success": True, "payslip": payslip})
            if action == "dateRange":
                start_date = request.args.get("startDate")
                end_date = request.args.get("endDate")
                if is_missing(start_date) or is_missing(end_date):
                    raise ApiError("startDate and endDate are required")
                return jsonify({"success": True, "payslips": store.payslips_in_range(db, start_date, end_date)})
            if action == "financialYear":
                try:
                    period = financial_year_period(request.args.get("year"))
                except ValueError as exc:
                    raise ApiError(str(exc)) from None
                payslips = store.payslips_in_range(db, period["start_date"], period["end_date"])
                return jsonify({"success": True, "period": period, "payslips": payslips})
            if action == "grouped":
                groups = group_by_financial_year(store.list_payslips(db, limit=int_arg("limit", 1000)))
                return jsonify({
                    "success": True,
                    "groups": [
                        {"financial_year": year, "label": format_financial_year(year), "payslips": items}
                        for year, items in groups.items()
                    ],
                })
            payslips = store.list_payslips(db, limit=int_arg("limit", 100))
            return jsonify({
                "success": True,
                "payslips": payslips,
                "financialYears": all_financial_years(p["pay_date"] for p in payslips),
            })

        if request.method == "POST":
            body = json_body()
            require(body, "file_name", "pay_date", "net_pay")
            if store.get_payslip_by_file_name(db, body["file_name"]) is not None:
                raise ApiError(f"Payslip {body['file_name']} already exists", 409)
            data = {
                "file_name": body["file_name"],
                "pay_date": body["pay_date"],
                "net_pay": money_value(body["net_pay"], "net_pay", required=True),
                "notes": body.get("notes"),
            }
            for name in payslip_money_fields:
                data[name] = money_value(body.get(name), name)
            payslip_id = store.create_payslip(db, data)
            app.logger.info("Created payslip id=%s file=%s", payslip_id, data["file_name"])
            return jsonify({"success": True, "payslipId": payslip_id, "message": "Payslip created successfully"})

        if request.method == "PUT":
            body = json_body()
            payslip_id = int_value(body.get("id"))
            updates = collect_updates(
                body,
                required_text=("file_name", "pay_date"),
                text_fields=("notes",),
                required_money=("net_pay",),
                optional_money=payslip_money_fields,
            )
            if not store.update_payslip(db, payslip_id, updates):
                raise ApiError("Payslip not found", 404)
            app.logger.info("Updated payslip id=%s fields=%s", payslip_id, sorted(updates))
            return jsonify({"success": True, "message": "Payslip updated successfully"})

        payslip_id = int_value(request.args.get("id"), "id parameter")
        store.delete_payslip(db, payslip_id)
        app.logger.info("Deleted payslip id=%s", payslip_id)
        return jsonify({"success": True, "message": "Payslip deleted successfully"})

    def payslip_record(result):
        record = {
            "file_name": result["file_name"],
            "pay_date": result["pay_date"],
            "net_pay": result["net_pay"],
        }
        ytd = result.get("year_to_date") or {}
        record["ytd_taxable_pay"] = ytd.get("total_taxable_pay")
        record["ytd_taxable_ni_pay"] = ytd.get("total_taxable_ni_pay")
        record["ytd_paye_tax"] = ytd.get("total_paye_tax")
        record["ytd_ni"] = ytd.get("total_ni")
        return record

    @app.post("/api/process-payslips")
    def process_payslips():
        require_multipart()
        documents = uploaded_documents("files")
        if not documents:
            raise ApiError("No files uploaded")

        confirm_replace = request.form.get("confirmReplace") == "true"
        try:
            replace_names = json.loads(request.form.get("filesToReplace") or "[]")
        except ValueError:
            raise ApiError("filesToReplace must be a JSON array of file names") from None
        if not isinstance(replace_names, list):
            raise ApiError("filesToReplace must be a JSON array of file names")

        extractor = get_extractor()
        db = get_db()
        results = extractor.extract_payslips(documents)

        extracted = [result for result in results if result["pay_date"] != "Error"]
        duplicates = [
            result["file_name"]
            for result in extracted
            if store.get_payslip_by_file_name(db, result["file_name"]) is not None
        ]
        if duplicates and not confirm_replace:
            return jsonify({
                "success": False,
                "duplicates": duplicates,
                "requiresConfirmation": True,
                "message": f"{len(duplicates)} payslip(s) already exist. Do you want to replace them?",
            })

        # Nothing is written until the batch is known to be saved.
        document_ids = register_documents(db, documents, "payslips")
        record_extraction(db, document_ids, results, "pay_date")

        payslip_ids = []
        replaced = 0
        skipped = 0
        financial_years = []
        saved_names = set()
        for result in extracted:
            file_name = result["file_name"]
            if file_name in saved_names:
                skipped += 1
                continue
            saved_names.add(file_name)
            if file_name not in duplicates:
                payslip_ids.append(store.create_payslip(db, payslip_record(result)))
            elif file_name in replace_names:
                payslip_ids.append(store.replace_payslip(db, payslip_record(result)))
                replaced += 1
            else:
                skipped += 1
                continue

            ytd = result.get("year_to_date")
            if not ytd:
                continue
            try:
                financial_year = get_financial_year(result["pay_date"])
            except ValueError:
                app.logger.warning("Skipping year-to-date figures for %s: bad pay date %r", file_name, result["pay_date"])
                continue
            outcome = store.upsert_financial_year_summary(
                db,
                {"financial_year": financial_year, "last_payslip_date": result["pay_date"], **ytd},
            )
            financial_years.append({"financial_year": financial_year, **outcome})

        failed = len(results) - len(extracted)
        app.logger.info(
            "Processed %s payslip file(s): saved=%s replaced=%s skipped=%s failed=%s",
            len(results),
            len(payslip_ids),
            replaced,
            skipped,
            failed,
        )
        return jsonify({
            "success": True,
            "results": results,
            "payslipIds": payslip_ids,
            "count": len(payslip_ids),
            "replaced": replaced,
            "skipped": skipped,
            "failed": failed,
            "financialYears": financial_years,
        })

    # Financial year summaries

    @app.route("/api/financial-years", methods=("GET", "DELETE"))
    def financial_years_api():
        db = get_db()
        year = request.args.get("year")

        if request.method == "GET":
            if not is_missing(year):
                summary = store.get_financial_year_summary(db, year)
                if summary is None:
                    raise ApiError("Financial year summary not found", 404)
                return jsonify({"success": True, "summary": summary})
            return jsonify({"success": True, "summaries": store.list_financial_year_summaries(db)})

        if is_missing(year):
            raise ApiError("year parameter is required")
        store.delete_financial_year_summary(db, year)
        app.logger.info("Deleted financial year summary %s", year)
        return jsonify({"success": True, "message": "Financial year summary deleted successfully"})

    # Expenses

    @app.route("/api/expenses", methods=("GET", "PUT", "DELETE"))
    def expenses_api():
        db = get_db()

        if request.method == "GET":
            action = request.args.get("action")
            if action == "stats":
                return jsonify({"success": True, "stats": store.expense_stats(db)})
            if action == "dateRange":
                start_date = request.args.get("startDate")
                end_date = request.args.get("endDate")
                if is_missing(start_date) or is_missing(end_date):
                    raise ApiError("startDate and endDate are required")
                return jsonify({"success": True, "expenses": store.expenses_in_range(db, start_date, end_date)})
            if action == "search":
                term = request.args.get("search")
                if is_missing(term):
                    raise ApiError("search parameter is required")
                return jsonify({"success": True, "expenses": store.search_expenses(db, term, limit=int_arg("limit", 50))})
            if action == "byCategory":
                category = request.args.get("category")
                if is_missing(category):
                    raise ApiError("category parameter is required")
                return jsonify({"success": True, "expenses": store.expenses_by_category(db, category)})
            return jsonify({"success": True, "expenses": store.list_expenses(db, limit=int_arg("limit", 100))})

        if request.method == "PUT":
            body = json_body()
            expense_id = int_value(body.get("id"))
            updates = collect_updates(
                body,
                required_text=("description", "date"),
                text_fields=("currency", "category", "notes"),
                required_money=("amount",),
            )
            if not store.update_expense(db, expense_id, updates):
                raise ApiError("Expense not found", 404)
            app.logger.info("Updated expense id=%s fields=%s", expense_id, sorted(updates))
            return jsonify({"success": True, "message": "Expense updated successfully"})

        expense_id = int_value(request.args.get("id"), "id parameter")
        store.delete_expense(db, expense_id)
        app.logger.info("Deleted expense id=%s", expense_id)
        return jsonify({"success": True, "message": "Expense deleted successfully"})

    def save_expense_batch(db, results, document_ids, csv_path=None):
        expense_ids = store.create_expenses(
            db,
            [
                {
                    "document_id": document_id,
                    "file_name": result["file_name"],
                    "description": result["description"],
                    "date": result["date"],
                    "amount": result["amount"],
                    "category": categorize_expense(result["description"]),
                }
                for document_id, result in zip(document_ids, results)
            ],
        )
        today = date.today().isoformat()
        total = round(sum(float(result["amount"] or 0) for result in results), 2)
        report_id = store.create_expense_report(
            db,
            f"Expense Report - {today}",
            today,
            expense_ids,
            total,
            csv_path=csv_path,
        )
        app.logger.info("Saved %s expense(s) in report id=%s total=%.2f", len(expense_ids), report_id, total)
        return report_id, expense_ids

    @app.post("/api/process-expenses")
    def process_expenses():
        if request.mimetype == "multipart/form-data":
            documents = uploaded_documents("files")
            output_mode = request.form.get("outputMode") or "save"
            if not documents:
                raise ApiError("No files uploaded")

            extractor = get_extractor()
            db = get_db()
            document_ids = register_documents(db, documents, "expenses")
            results = extractor.extract_receipts(documents)
            record_extraction(db, document_ids, results, "date")
            csv_content = generate_expense_csv(results)
            report_id, expense_ids = save_expense_batch(db, results, document_ids)
            return jsonify({
                "success": True,
                "csvContent": csv_content,
                "count": len(results),
                "outputMode": output_mode,
                "reportId": report_id,
                "expenseIds": expense_ids,
            })

        if request.mimetype != "application/json":
            raise ApiError("Unsupported Content-Type", 415)

        body = json_body()
        folder = body.get("path")
        action = body.get("action")
        output_mode = body.get("outputMode") or "save"
        if is_missing(folder):
            raise ApiError("Directory path is required")
        if not os.path.isdir(folder):
            raise ApiError("Directory not found", 404)

        if action == "scan":
            files = list_receipt_files(folder)
            return jsonify({"success": True, "count": len(files), "files": files})

        if action != "process":
            raise ApiError("Invalid action")

        extractor = get_extractor()
        db = get_db()
        documents = read_receipt_files(folder)
        document_ids = register_documents(db, documents, "expenses")
        results = extractor.extract_receipts(documents)
        record_extraction(db, document_ids, results, "date")
        csv_content = generate_expense_csv(results)

        csv_path = None
        if output_mode != "download":
            csv_path = os.path.join(folder, f"expenses_{date.today().strftime('%d-%m-%Y')}.csv")
            with open(csv_path, "w", encoding="utf-8", newline="") as handle:
                handle.write(csv_content)

        report_id, expense_ids = save_expense_batch(db, results, document_ids, csv_path=csv_path)
        return jsonify({
            "success": True,
            "csvPath": csv_path,
            "csvContent": csv_content,
            "count": len(results),
            "outputMode": output_mode,
            "reportId": report_id,
            "expenseIds": expense_ids,
        })

    # Expense reports

    @app.route("/api/expense-reports", methods=("GET", "DELETE"))
    def expense_reports_api():
        db = get_db()

        if request.method == "GET":
            if request.args.get("includeStatistics") == "true":
                statistics = store.report_totals(db)
                statistics["categories"] = expense_category_breakdown(store.reported_expenses(db))
                return jsonify({"success": True, "statistics": statistics})

            raw_id = request.args.get("id")
            if is_missing(raw_id):
                return jsonify({"success": True, "reports": store.list_expense_reports(db, limit=int_arg("limit", 50))})

            report_id = int_value(raw_id)
            report = store.get_expense_report(db, report_id)
            if report is None:
                raise ApiError("Report not found", 404)

            if request.args.get("format") == "csv":
                csv_content = generate_expense_csv(store.get_report_expenses(db, report_id))
                return Response(
                    csv_content,
                    mimetype="text/csv",
                    headers={"Content-Disposition": f"attachment; filename=expense-report-{report_id}.csv"},
                )
            if request.args.get("includeExpenses") == "true":
                return jsonify({"success": True, "report": report, "expenses": store.get_report_expenses(db, report_id)})
            return jsonify({"success": True, "report": report})

        report_id = int_value(request.args.get("id"), "Report ID")
        if store.get_expense_report(db, report_id) is None:
            raise ApiError("Report not found", 404)
        keep_expenses = request.args.get("keepExpenses") == "true"
        store.delete_expense_report(db, report_id, keep_expenses=keep_expenses)
        app.logger.info("Deleted expense report id=%s keep_expenses=%s", report_id, keep_expenses)
        return jsonify({"success": True, "message": "Report deleted successfully"})

    # ZIP and email

    @app.post("/api/create-zip")
    def create_zip():
        if request.mimetype == "multipart/form-data":
            csv_upload = request.files.get("csv")
            if csv_upload is None or not csv_upload.filename:
                raise ApiError("CSV file is required")
            csv_bytes = csv_upload.read()
            receipts = [
                (secure_filename(upload.filename) or "receipt", upload.read())
                for upload in request.files.getlist("receipts")
                if upload and upload.filename
            ]
            zip_bytes = build_zip(secure_filename(csv_upload.filename) or dated_file_name("csv"), csv_bytes, receipts)
            rows, total = parse_expense_csv(csv_bytes.decode("utf-8-sig", errors="replace"))
            payload = {"expenseCount": len(rows), "totalAmount": total, "receiptCount": len(receipts)}
        elif request.mimetype == "application/json":
            body = json_body()
            folder = body.get("folderPath")
            if is_missing(folder):
                raise ApiError("Folder path is required")
            if not os.path.isdir(folder):
                raise ApiError("Directory not found", 404)
            zip_bytes = zip_folder(folder, body.get("csvContent") or None)
            payload = {"receiptCount": len(list_receipt_files(folder))}
        else:
            raise ApiError("Unsupported Content-Type", 415)

        file_name = dated_file_name("zip")
        app.logger.info("Built %s (%s bytes)", file_name, len(zip_bytes))
        return jsonify({
            "success": True,
            "zipData": base64.b64encode(zip_bytes).decode("ascii"),
            "fileName": file_name,
            **payload,
        })

    @app.post("/api/send-email")
    def send_email_api():
        body = json_body()
        if any(is_missing(body.get(name)) for name in ("recipient", "zipData", "fileName")):
            raise ApiError("Recipient, zip data, and file name are required")
        message_id = send_email(
            app.config,
            recipient=body["recipient"],
            zip_data=body["zipData"],
            file_name=body["fileName"],
            subject=body.get("subject"),
            message=body.get("message"),
        )
        return jsonify({"success": True, "messageId": message_id, "message": "Email sent successfully"})

    # Tax returns

    tax_money_fields = ("paye_tax", "savings_tax", "child_benefit_payback")

    @app.route("/api/tax-returns", methods=("GET", "POST", "PUT", "DELETE"))
    def tax_returns_api():
        db = get_db()
        year = request.args.get("year")

        if request.method == "GET":
            if not is_missing(year):
                tax_return = store.get_tax_return(db, year)
                if tax_return is None:
                    raise ApiError("Tax return not found", 404)
                return jsonify({"success": True, "taxReturn": tax_return})
            return jsonify({"success": True, "taxReturns": store.list_tax_returns(db)})

        if request.method == "POST":
            body = json_body()
            require(body, "financial_year", "total_tax_charge", "payment_deadline")
            if store.get_tax_return(db, body["financial_year"]) is not None:
                raise ApiError(f"Tax return for {body['financial_year']} already exists", 409)
            data = {
                "financial_year": body["financial_year"],
                "total_tax_charge": money_value(body["total_tax_charge"], "total_tax_charge", required=True),
                "payment_deadline": body["payment_deadline"],
                "payment_reference": body.get("payment_reference"),
                "personal_allowance_reduction": body.get("personal_allowance_reduction"),
                "notes": body.get("notes"),
            }
            for name in tax_money_fields:
                data[name] = money_value(body.get(name), name)
            tax_return = store.create_tax_return(db, data)
            app.logger.info("Created tax return for %s", data["financial_year"])
            return jsonify({"success": True, "message": "Tax return created successfully", "taxReturn": tax_return})

        if is_missing(year):
            raise ApiError("year parameter is required")

        if request.method == "PUT":
            body = json_body()
            updates = collect_updates(
                body,
                text_fields=("payment_deadline", "payment_reference", "personal_allowance_reduction", "notes"),
                optional_money=("total_tax_charge",) + tax_money_fields,
            )
            tax_return = store.update_tax_return(db, year, updates)
            if tax_return is None:
                raise ApiError("Tax return not found", 404)
            app.logger.info("Updated tax return for %s fields=%s", year, sorted(updates))
            return jsonify({"success": True, "message": "Tax return updated successfully", "taxReturn": tax_return})

        store.delete_tax_return(db, year)
        app.logger.info("Deleted tax return for %s", year)
        return jsonify({"success": True, "message": "Tax return deleted successfully"})

    # Documents

    @app.route("/api/documents", methods=("GET", "DELETE"))
    def documents_api():
        db = get_db()

        if request.method == "DELETE":
            document_id = int_value(request.args.get("id"), "id parameter")
            if not store.delete_document(db, document_id):
                raise ApiError("Document not found", 404)
            app.logger.info("Deleted document id=%s", document_id)
            return jsonify({"success": True, "message": "Document deleted successfully"})

        action = request.args.get("action")
        limit = int_arg("limit", 50)
        raw_id = request.args.get("id")
        if not is_missing(raw_id):
            document_id = int_value(raw_id)
            document = store.get_document(db, document_id)
            if document is None:
                raise ApiError("Document not found", 404)
            if action == "withContent":
                return jsonify({"success": True, "document": document, "content": store.get_document_content(db, document_id)})
            return jsonify({"success": True, "document": document})

        search = request.args.get("search")
        if action == "search" and not is_missing(search):
            return jsonify({"success": True, "documents": store.search_documents(db, search, limit)})
        assistant = request.args.get("assistant")
        if not is_missing(assistant):
            return jsonify({"success": True, "documents": store.documents_by_assistant(db, assistant, limit)})
        return jsonify({"success": True, "documents": store.recent_documents(db, limit)})

    # AI insights

    def stored_financial_data(db):
        return {
            "pensions": store.list_pensions(db),
            "bankAccounts": store.list_bank_accounts(db),
            "financialYears": store.list_financial_year_summaries(db),
            "taxReturns": store.list_tax_returns(db),
        }

    @app.post("/api/financial-summary")
    def financial_summary():
        if request.mimetype == "multipart/form-data":
            raw = request.form.get("data")
            try:
                body = json.loads(raw) if raw else {}
            except ValueError:
                raise ApiError("data must be valid JSON") from None
        else:
            body = request.get_json(silent=True) or {}
        if not isinstance(body, dict):
            raise ApiError("Request body must be a JSON object")

        extractor = get_extractor()
        if not any(key in body for key in ("pensions", "financialYears", "bankAccounts")):
            body = stored_financial_data(get_db())
        result = extractor.summarize_finances(
            body.get("pensions") or [],
            body.get("financialYears") or [],
            body.get("bankAccounts") or [],
        )
        return jsonify({"success": True, "result": result})

    @app.post("/api/financial-welcome")
    def financial_welcome():
        body = request.get_json(silent=True) or {}
        extractor = get_extractor()
        payslips = body.get("payslips") if isinstance(body, dict) else None
        if payslips is not None and not isinstance(payslips, list):
            raise ApiError("payslips must be a list")
        if payslips is None:
            payslips = store.list_payslips(get_db(), limit=3)
        result = extractor.welcome_message(payslips, app.config["USER_DISPLAY_NAME"])
        return jsonify({"success": True, "result": result})

    @app.post("/api/financial-chat")
    def financial_chat():
        body = json_body()
        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            raise ApiError("messages are required")
        if not all(isinstance(message, dict) for message in messages):
            raise ApiError("each message must be an object with role and content")
        extractor = get_extractor()
        financial_data = body.get("financialData")
        if not isinstance(financial_data, dict):
            financial_data = stored_financial_data(get_db())
        text = extractor.chat(messages, financial_data)
        return jsonify({"success": True, "text": text})

    @app.get("/")
    def index():
        endpoints = sorted({rule.rule for rule in app.url_map.iter_rules() if rule.endpoint != "static"})
        return jsonify({"success": True, "name": "finance-assistant", "endpoints": endpoints})

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
