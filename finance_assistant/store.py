"""Data access for every finance entity.

Each function takes an open connection (see ``db.connect_db``) as its first
argument and returns plain dicts, so route handlers can serialize results
directly.
"""

import json
from datetime import date


PENSION_FIELDS = ("name", "url", "amount", "notes")
BANK_ACCOUNT_FIELDS = ("name", "bank", "interest_rate", "amount", "notes")
PAYSLIP_FIELDS = (
    "file_name",
    "pay_date",
    "net_pay",
    "gross_pay",
    "tax_paid",
    "ni_paid",
    "pension_contribution",
    "other_deductions",
    "ytd_taxable_pay",
    "ytd_taxable_ni_pay",
    "ytd_paye_tax",
    "ytd_ni",
    "notes",
)
EXPENSE_FIELDS = ("description", "date", "amount", "currency", "category", "notes")
TAX_RETURN_FIELDS = (
    "total_tax_charge",
    "payment_deadline",
    "paye_tax",
    "savings_tax",
    "child_benefit_payback",
    "payment_reference",
    "personal_allowance_reduction",
    "notes",
)
DOCUMENT_STATUSES = ("pending", "processing", "completed", "error")


def _insert(db, table, values):
    columns = list(values)
    placeholders = ", ".join(["?"] * len(columns))
    return db.insert(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
        [values[col] for col in columns],
    )


def _update_fields(db, table, row_id, updates, allowed):
    fields = [name for name in allowed if name in updates]
    if not fields:
        return 0
    set_clause = ", ".join(f"{name} = ?" for name in fields)
    cur = db.execute(
        f"UPDATE {table} SET {set_clause}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        [updates[name] for name in fields] + [row_id],
    )
    return cur.rowcount


def _exists(db, table, row_id):
    return db.execute(f"SELECT 1 FROM {table} WHERE id = ?", (row_id,)).fetchone() is not None


def _delete_by_id(db, table, row_id):
    with db.transaction():
        cur = db.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
    return cur.rowcount > 0


# Pensions


def list_pensions(db):
    return db.fetch_all("SELECT * FROM pensions ORDER BY name ASC")


def get_pension(db, pension_id):
    return db.fetch_one("SELECT * FROM pensions WHERE id = ?", (pension_id,))


def pension_stats(db):
    return db.fetch_one(
        """
        SELECT
            COUNT(*) AS total_pensions,
            COALESCE(SUM(amount), 0) AS total_amount,
            COALESCE(AVG(amount), 0) AS average_amount
        FROM pensions
        """,
    )


def create_pension(db, data):
    with db.transaction():
        return _insert(
            db,
            "pensions",
            {
                "name": data["name"],
                "url": data.get("url"),
                "amount": data["amount"],
                "notes": data.get("notes"),
            },
        )


def update_pension(db, pension_id, updates):
    """Apply a partial update. Returns False when the pension does not exist."""
    if not _exists(db, "pensions", pension_id):
        return False
    with db.transaction():
        _update_fields(db, "pensions", pension_id, updates, PENSION_FIELDS)
    return True


def delete_pension(db, pension_id):
    return _delete_by_id(db, "pensions", pension_id)


# Bank accounts


def list_bank_accounts(db):
    return db.fetch_all("SELECT * FROM bank_accounts ORDER BY name ASC")


def get_bank_account(db, account_id):
    return db.fetch_one("SELECT * FROM bank_accounts WHERE id = ?", (account_id,))


def bank_accounts_by_bank(db, bank):
    return db.fetch_all("SELECT * FROM bank_accounts WHERE bank = ? ORDER BY name ASC", (bank,))


def bank_account_stats(db):
    return db.fetch_one(
        """
        SELECT
            COUNT(*) AS total_accounts,
            COALESCE(SUM(amount), 0) AS total_balance,
            COALESCE(AVG(amount), 0) AS average_balance,
            COALESCE(SUM(amount * interest_rate / 100), 0) AS total_interest
        FROM bank_accounts
        """,
    )


def create_bank_account(db, data):
    with db.transaction():
        return _insert(
            db,
            "bank_accounts",
            {
                "name": data["name"],
                "bank": data["bank"],
                "interest_rate": data.get("interest_rate"),
                "amount": data["amount"],
                "notes": data.get("notes"),
            },
        )


def update_bank_account(db, account_id, updates):
    if not _exists(db, "bank_accounts", account_id):
        return False
    with db.transaction():
        _update_fields(db, "bank_accounts", account_id, updates, BANK_ACCOUNT_FIELDS)
    return True


def delete_bank_account(db, account_id):
    return _delete_by_id(db, "bank_accounts", account_id)


# Payslips


def _payslip_values(data):
    return {name: data.get(name) for name in PAYSLIP_FIELDS}


def list_payslips(db, limit=100):
    return db.fetch_all(
        "SELECT * FROM payslips ORDER BY pay_date DESC, created_at DESC LIMIT ?",
        (limit,),
    )


def get_payslip(db, payslip_id):
    return db.fetch_one("SELECT * FROM payslips WHERE id = ?", (payslip_id,))


def get_payslip_by_file_name(db, file_name):
    return db.fetch_one("SELECT * FROM payslips WHERE file_name = ?", (file_name,))


def payslips_in_range(db, start_date, end_date):
    return db.fetch_all(
        "SELECT * FROM payslips WHERE pay_date >= ? AND pay_date <= ? ORDER BY pay_date DESC",
        (start_date, end_date),
    )


def payslip_stats(db):
    return db.fetch_one(
        """
        SELECT
            COUNT(*) AS total_payslips,
            COALESCE(SUM(net_pay), 0) AS total_net_pay,
            COALESCE(SUM(tax_paid), 0) AS total_tax_paid,
            COALESCE(SUM(ni_paid), 0) AS total_ni_paid,
            COALESCE(SUM(pension_contribution), 0) AS total_pension_contribution,
            COALESCE(AVG(net_pay), 0) AS average_net_pay
        FROM payslips
        """,
    )


def payslip_year_to_date(db, year):
    """Sum payslip figures for one calendar year."""
    return db.fetch_one(
        """
        SELECT
            COALESCE(SUM(net_pay), 0) AS total_net_pay,
            COALESCE(SUM(tax_paid), 0) AS total_tax_paid,
            COALESCE(SUM(ni_paid), 0) AS total_ni_paid,
            COALESCE(SUM(pension_contribution), 0) AS total_pension_contribution
        FROM payslips
        WHERE pay_date >= ? AND pay_date < ?
        """,
        (f"{int(year):04d}-01-01", f"{int(year) + 1:04d}-01-01"),
    )


def create_payslip(db, data):
    with db.transaction():
        return _insert(db, "payslips", _payslip_values(data))


def replace_payslip(db, data):
    """Delete any payslip with the same file name and insert ``data`` in one transaction."""
    with db.transaction():
        db.execute("DELETE FROM payslips WHERE file_name = ?", (data["file_name"],))
        return _insert(db, "payslips", _payslip_values(data))


def update_payslip(db, payslip_id, updates):
    if not _exists(db, "payslips", payslip_id):
        return False
    with db.transaction():
        _update_fields(db, "payslips", payslip_id, updates, PAYSLIP_FIELDS)
    return True


def delete_payslip(db, payslip_id):
    return _delete_by_id(db, "payslips", payslip_id)


# Financial year summaries


def list_financial_year_summaries(db):
    return db.fetch_all("SELECT * FROM financial_year_summaries ORDER BY financial_year DESC")


def get_financial_year_summary(db, financial_year):
    return db.fetch_one(
        "SELECT * FROM financial_year_summaries WHERE financial_year = ?",
        (financial_year,),
    )


def _as_date(value):
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def upsert_financial_year_summary(db, summary):
    """Store year-to-date totals for a financial year unless newer data is already held.

    ``summary`` carries ``financial_year``, ``last_payslip_date`` and the four
    ``total_*`` figures. Returns ``{"success", "message", "is_newer"}``.
    """
    financial_year = summary["financial_year"]
    last_payslip_date = summary["last_payslip_date"]
    figures = (
        summary.get("total_taxable_pay") or 0,
        summary.get("total_taxable_ni_pay") or 0,
        summary.get("total_paye_tax") or 0,
        summary.get("total_ni") or 0,
    )
    existing = get_financial_year_summary(db, financial_year)

    if existing is None:
        with db.transaction():
            db.execute(
                """
                INSERT INTO financial_year_summaries (
                    financial_year, last_payslip_date, total_taxable_pay,
                    total_taxable_ni_pay, total_paye_tax, total_ni
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (financial_year, last_payslip_date, *figures),
            )
        return {
            "success": True,
            "message": f"Created financial year {financial_year} with data from {last_payslip_date}",
            "is_newer": True,
        }

    if _as_date(last_payslip_date) < _as_date(existing["last_payslip_date"]):
        return {
            "success": False,
            "message": (
                f"Payslip date {last_payslip_date} is older than existing data "
                f"({existing['last_payslip_date']}). No update performed."
            ),
            "is_newer": False,
        }

    with db.transaction():
        db.execute(
            """
            UPDATE financial_year_summaries
            SET last_payslip_date = ?,
                total_taxable_pay = ?,
                total_taxable_ni_pay = ?,
                total_paye_tax = ?,
                total_ni = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE financial_year = ?
            """,
            (last_payslip_date, *figures, financial_year),
        )
    return {
        "success": True,
        "message": f"Updated financial year {financial_year} with data from {last_payslip_date}",
        "is_newer": True,
    }


def delete_financial_year_summary(db, financial_year):
    with db.transaction():
        cur = db.execute("DELETE FROM financial_year_summaries WHERE financial_year = ?", (financial_year,))
    return cur.rowcount > 0


# Expenses


def list_expenses(db, limit=100):
    return db.fetch_all(
        "SELECT * FROM expenses ORDER BY date DESC, created_at DESC LIMIT ?",
        (limit,),
    )


def get_expense(db, expense_id):
    return db.fetch_one("SELECT * FROM expenses WHERE id = ?", (expense_id,))


def expenses_in_range(db, start_date, end_date):
    return db.fetch_all(
        "SELECT * FROM expenses WHERE date >= ? AND date <= ? ORDER BY date DESC",
        (start_date, end_date),
    )


def search_expenses(db, term, limit=50):
    pattern = f"%{term}%"
    return db.fetch_all(
        """
        SELECT * FROM expenses
        WHERE description LIKE ? OR file_name LIKE ? OR notes LIKE ?
        ORDER BY date DESC
        LIMIT ?
        """,
        (pattern, pattern, pattern, limit),
    )


def expenses_by_category(db, category):
    return db.fetch_all("SELECT * FROM expenses WHERE category = ? ORDER BY date DESC", (category,))


def expense_stats(db):
    return db.fetch_one(
        """
        SELECT
            COALESCE(SUM(amount), 0) AS total_amount,
            COALESCE(AVG(amount), 0) AS avg_amount,
            COUNT(*) AS expense_count
        FROM expenses
        """,
    )


def _expense_values(data):
    return {
        "document_id": data.get("document_id"),
        "file_name": data["file_name"],
        "description": data["description"],
        "date": data["date"],
        "amount": data["amount"],
        "currency": data.get("currency") or "GBP",
        "category": data.get("category"),
        "notes": data.get("notes"),
    }


def create_expense(db, data):
    with db.transaction():
        return _insert(db, "expenses", _expense_values(data))


def create_expenses(db, items):
    """Insert several expenses atomically and return their ids in order."""
    with db.transaction():
        return [_insert(db, "expenses", _expense_values(item)) for item in items]


def update_expense(db, expense_id, updates):
    if not _exists(db, "expenses", expense_id):
        return False
    with db.transaction():
        _update_fields(db, "expenses", expense_id, updates, EXPENSE_FIELDS)
    return True


def delete_expense(db, expense_id):
    return _delete_by_id(db, "expenses", expense_id)


# Expense reports


def list_expense_reports(db, limit=50):
    return db.fetch_all(
        "SELECT * FROM expense_reports ORDER BY report_date DESC, created_at DESC LIMIT ?",
        (limit,),
    )


def get_expense_report(db, report_id):
    return db.fetch_one("SELECT * FROM expense_reports WHERE id = ?", (report_id,))


def get_report_expenses(db, report_id):
    return db.fetch_all(
        """
        SELECT e.*
        FROM expenses e
        INNER JOIN report_expenses re ON e.id = re.expense_id
        WHERE re.report_id = ?
        ORDER BY e.date DESC
        """,
        (report_id,),
    )


def _delete_report_rows(db, report_id, keep_expenses):
    linked = [
        row["expense_id"]
        for row in db.execute("SELECT expense_id FROM report_expenses WHERE report_id = ?", (report_id,)).fetchall()
    ]
    db.execute("DELETE FROM report_expenses WHERE report_id = ?", (report_id,))
    cur = db.execute("DELETE FROM expense_reports WHERE id = ?", (report_id,))
    deleted = cur.rowcount > 0
    if keep_expenses:
        return deleted

    for expense_id in linked:
        other_links = db.execute(
            "SELECT COUNT(*) AS count FROM report_expenses WHERE expense_id = ?",
            (expense_id,),
        ).fetchone()["count"]
        if other_links == 0:
            db.execute("DELETE FROM expenses WHERE id = ?", (expense_id,))
    return deleted


def create_expense_report(db, report_name, report_date, expense_ids, total_amount, csv_path=None, zip_path=None, currency="GBP"):
    """Create a report linked to ``expense_ids``.

    An existing report with the same name and date is deleted first, along with
    any of its expenses that no other report references.
    """
    with db.transaction():
        previous = db.execute(
            "SELECT id FROM expense_reports WHERE report_name = ? AND report_date = ?",
            (report_name, report_date),
        ).fetchall()
        for row in previous:
            _delete_report_rows(db, row["id"], keep_expenses=False)

        report_id = _insert(
            db,
            "expense_reports",
            {
                "report_name": report_name,
                "report_date": report_date,
                "total_amount": total_amount,
                "currency": currency,
                "expense_count": len(expense_ids),
                "csv_path": csv_path,
                "zip_path": zip_path,
            },
        )
        for expense_id in dict.fromkeys(expense_ids):
            db.execute(
                "INSERT INTO report_expenses (report_id, expense_id) VALUES (?, ?)",
                (report_id, expense_id),
            )
    return report_id


def delete_expense_report(db, report_id, keep_expenses=False):
    """Delete a report. Unless ``keep_expenses`` is set, expenses left without any report go too."""
    with db.transaction():
        return _delete_report_rows(db, report_id, keep_expenses)


def report_totals(db):
    report_count = db.execute("SELECT COUNT(*) AS total_reports FROM expense_reports").fetchone()["total_reports"]
    totals = db.fetch_one(
        """
        SELECT
            COUNT(DISTINCT e.id) AS total_expenses,
            COALESCE(SUM(e.amount), 0) AS total_amount
        FROM expenses e
        INNER JOIN report_expenses re ON e.id = re.expense_id
        """,
    )
    return {"total_reports": report_count, **totals}


def reported_expenses(db):
    """Description and amount of every expense linked to a report, once per link."""
    return db.fetch_all(
        """
        SELECT e.description, e.amount
        FROM expenses e
        INNER JOIN report_expenses re ON e.id = re.expense_id
        """,
    )


# Tax returns


def list_tax_returns(db):
    return db.fetch_all("SELECT * FROM tax_returns ORDER BY financial_year DESC")


def get_tax_return(db, financial_year):
    return db.fetch_one("SELECT * FROM tax_returns WHERE financial_year = ?", (financial_year,))


def create_tax_return(db, data):
    with db.transaction():
        db.execute(
            """
            INSERT INTO tax_returns (
                financial_year, total_tax_charge, payment_deadline, paye_tax,
                savings_tax, child_benefit_payback, payment_reference,
                personal_allowance_reduction, notes
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                data["financial_year"],
                data["total_tax_charge"],
                data["payment_deadline"],
                data.get("paye_tax") or 0,
                data.get("savings_tax") or 0,
                data.get("child_benefit_payback") or 0,
                data.get("payment_reference"),
                data.get("personal_allowance_reduction"),
                data.get("notes"),
            ),
        )
    return get_tax_return(db, data["financial_year"])


def update_tax_return(db, financial_year, updates):
    """Overwrite the fields present in ``updates`` and keep the rest. Returns None if absent."""
    values = [updates.get(name) for name in TAX_RETURN_FIELDS]
    set_clause = ", ".join(f"{name} = COALESCE(?, {name})" for name in TAX_RETURN_FIELDS)
    with db.transaction():
        cur = db.execute(
            f"UPDATE tax_returns SET {set_clause}, updated_at = CURRENT_TIMESTAMP WHERE financial_year = ?",
            values + [financial_year],
        )
    if cur.rowcount == 0:
        return None
    return get_tax_return(db, financial_year)


def delete_tax_return(db, financial_year):
    with db.transaction():
        cur = db.execute("DELETE FROM tax_returns WHERE financial_year = ?", (financial_year,))
    return cur.rowcount > 0


# Documents


def create_document(db, file_name, file_type, assistant_type, file_path=None, file_size=None, metadata=None):
    with db.transaction():
        return _insert(
            db,
            "documents",
            {
                "file_name": file_name,
                "file_path": file_path,
                "file_type": file_type,
                "file_size": file_size,
                "assistant_type": assistant_type,
                "status": "pending",
                "metadata": json.dumps(metadata) if metadata is not None else None,
            },
        )


def update_document_status(db, document_id, status):
    if status not in DOCUMENT_STATUSES:
        raise ValueError(f"Unknown document status: {status}")
    processed = status in ("completed", "error")
    with db.transaction():
        db.execute(
            f"""
            UPDATE documents
            SET status = ?,
                {"processed_date = CURRENT_TIMESTAMP," if processed else ""}
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (status, document_id),
        )


def store_document_content(db, document_id, content_type, content, extracted_data=None):
    with db.transaction():
        return _insert(
            db,
            "document_content",
            {
                "document_id": document_id,
                "content_type": content_type,
                "content": content,
                "extracted_data": json.dumps(extracted_data) if extracted_data is not None else None,
            },
        )


def get_document(db, document_id):
    return db.fetch_one("SELECT * FROM documents WHERE id = ?", (document_id,))


def get_document_content(db, document_id):
    return db.fetch_all(
        "SELECT * FROM document_content WHERE document_id = ? ORDER BY created_at DESC, id DESC",
        (document_id,),
    )


def documents_by_assistant(db, assistant_type, limit=50):
    return db.fetch_all(
        "SELECT * FROM documents WHERE assistant_type = ? ORDER BY upload_date DESC, id DESC LIMIT ?",
        (assistant_type, limit),
    )


def search_documents(db, term, limit=50):
    return db.fetch_all(
        "SELECT * FROM documents WHERE file_name LIKE ? ORDER BY upload_date DESC, id DESC LIMIT ?",
        (f"%{term}%", limit),
    )


def recent_documents(db, limit=50):
    return db.fetch_all(
        "SELECT * FROM documents ORDER BY upload_date DESC, id DESC LIMIT ?",
        (limit,),
    )


def delete_document(db, document_id):
    return _delete_by_id(db, "documents", document_id)
