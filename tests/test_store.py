import pytest

from finance_assistant import store


def make_expense(db, description="Taxi", amount=10.0, file_name="r.jpg"):
    return store.create_expense(
        db, {"file_name": file_name, "description": description, "date": "2025-01-10", "amount": amount}
    )


def summary(year, pay_date, taxable):
    return {
        "financial_year": year,
        "last_payslip_date": pay_date,
        "total_taxable_pay": taxable,
        "total_taxable_ni_pay": taxable,
        "total_paye_tax": taxable / 10,
        "total_ni": taxable / 20,
    }


def test_financial_year_upsert_only_moves_forward(db):
    created = store.upsert_financial_year_summary(db, summary("2024/25", "2024-06-28", 9000))
    assert created["success"] is True
    assert created["is_newer"] is True
    assert created["message"].startswith("Created financial year 2024/25")

    older = store.upsert_financial_year_summary(db, summary("2024/25", "2024-05-28", 6000))
    assert older["success"] is False
    assert older["is_newer"] is False
    assert store.get_financial_year_summary(db, "2024/25")["total_taxable_pay"] == 9000

    same_day = store.upsert_financial_year_summary(db, summary("2024/25", "2024-06-28", 9100))
    assert same_day["is_newer"] is True
    assert store.get_financial_year_summary(db, "2024/25")["total_taxable_pay"] == 9100

    newer = store.upsert_financial_year_summary(db, summary("2024/25", "2024-07-28", 12000))
    assert newer["message"].startswith("Updated financial year 2024/25")
    row = store.get_financial_year_summary(db, "2024/25")
    assert row["last_payslip_date"] == "2024-07-28"
    assert row["total_ni"] == 600
    assert len(store.list_financial_year_summaries(db)) == 1


def test_delete_report_removes_only_unshared_expenses(db):
    shared = make_expense(db, "Shared taxi")
    only_first = make_expense(db, "Hotel")
    first = store.create_expense_report(db, "Trip A", "2025-01-31", [shared, only_first], 30.0)
    store.create_expense_report(db, "Trip B", "2025-02-28", [shared], 10.0)

    assert store.delete_expense_report(db, first) is True

    assert store.get_expense_report(db, first) is None
    assert store.get_expense(db, only_first) is None
    assert store.get_expense(db, shared) is not None


def test_delete_report_keep_expenses(db):
    expense_id = make_expense(db)
    report_id = store.create_expense_report(db, "Trip", "2025-01-31", [expense_id], 10.0)

    store.delete_expense_report(db, report_id, keep_expenses=True)

    assert store.get_expense_report(db, report_id) is None
    assert store.get_expense(db, expense_id) is not None
    assert db.execute("SELECT COUNT(*) AS n FROM report_expenses").fetchone()["n"] == 0


def test_report_with_same_name_and_date_replaces_previous(db):
    old_expense = make_expense(db, "Old")
    old_report = store.create_expense_report(db, "Expense Report - 2025-03-01", "2025-03-01", [old_expense], 10.0)
    new_expense = make_expense(db, "New")

    new_report = store.create_expense_report(db, "Expense Report - 2025-03-01", "2025-03-01", [new_expense], 12.0)

    reports = store.list_expense_reports(db)
    assert [r["id"] for r in reports] == [new_report]
    assert store.get_expense_report(db, old_report) is None
    assert store.get_expense(db, old_expense) is None
    assert [e["id"] for e in store.get_report_expenses(db, new_report)] == [new_expense]
    assert reports[0]["expense_count"] == 1


def test_report_totals_count_linked_expenses_only(db):
    linked = make_expense(db, "Costa", 3.5)
    make_expense(db, "Unlinked", 100.0)
    store.create_expense_report(db, "R", "2025-01-01", [linked], 3.5)

    totals = store.report_totals(db)
    assert totals == {"total_reports": 1, "total_expenses": 1, "total_amount": 3.5}
    assert store.reported_expenses(db) == [{"description": "Costa", "amount": 3.5}]


def test_tax_return_update_keeps_absent_fields(db):
    store.create_tax_return(
        db,
        {
            "financial_year": "2023/24",
            "total_tax_charge": 1200.0,
            "payment_deadline": "2025-01-31",
            "savings_tax": 40.0,
            "payment_reference": "REF1",
        },
    )

    updated = store.update_tax_return(db, "2023/24", {"total_tax_charge": 1300.0, "notes": "amended"})

    assert updated["total_tax_charge"] == 1300.0
    assert updated["savings_tax"] == 40.0
    assert updated["payment_reference"] == "REF1"
    assert updated["notes"] == "amended"
    assert updated["paye_tax"] == 0
    assert store.update_tax_return(db, "1999/00", {"notes": "x"}) is None


def test_replace_payslip_swaps_row(db):
    first = store.create_payslip(db, {"file_name": "jan.pdf", "pay_date": "2025-01-28", "net_pay": 2000.0})
    second = store.replace_payslip(db, {"file_name": "jan.pdf", "pay_date": "2025-01-28", "net_pay": 2100.0})

    assert second != first
    assert store.get_payslip(db, first) is None
    assert store.get_payslip_by_file_name(db, "jan.pdf")["net_pay"] == 2100.0


def test_payslip_stats_and_calendar_ytd(db):
    store.create_payslip(db, {"file_name": "a.pdf", "pay_date": "2024-12-28", "net_pay": 1000.0, "tax_paid": 100.0})
    store.create_payslip(db, {"file_name": "b.pdf", "pay_date": "2025-01-28", "net_pay": 3000.0, "tax_paid": 300.0})

    stats = store.payslip_stats(db)
    assert stats["total_payslips"] == 2
    assert stats["average_net_pay"] == 2000.0
    assert store.payslip_year_to_date(db, 2025)["total_tax_paid"] == 300.0
    assert [p["file_name"] for p in store.list_payslips(db)] == ["b.pdf", "a.pdf"]


def test_partial_updates_and_missing_rows(db):
    pension_id = store.create_pension(db, {"name": "SIPP", "amount": 100.0})

    assert store.update_pension(db, pension_id, {"amount": 250.0, "unknown": "ignored"}) is True
    pension = store.get_pension(db, pension_id)
    assert pension["amount"] == 250.0
    assert pension["name"] == "SIPP"
    assert store.update_pension(db, 9999, {"amount": 1.0}) is False


def test_bank_account_interest_stats(db):
    store.create_bank_account(db, {"name": "Saver", "bank": "B1", "amount": 1000.0, "interest_rate": 5.0})
    store.create_bank_account(db, {"name": "Current", "bank": "B1", "amount": 500.0})

    stats = store.bank_account_stats(db)
    assert stats["total_accounts"] == 2
    assert stats["total_balance"] == 1500.0
    assert stats["total_interest"] == pytest.approx(50.0)
    assert [a["name"] for a in store.bank_accounts_by_bank(db, "B1")] == ["Current", "Saver"]


def test_document_lifecycle_and_cascade(db):
    document_id = store.create_document(db, "r.jpg", "image/jpeg", "expenses", file_size=3)
    store.update_document_status(db, document_id, "processing")
    store.store_document_content(db, document_id, "extracted_json", "{}", {"amount": 1})
    store.update_document_status(db, document_id, "completed")
    expense_id = store.create_expense(
        db,
        {"document_id": document_id, "file_name": "r.jpg", "description": "Bus", "date": "2025-01-01", "amount": 2.0},
    )

    document = store.get_document(db, document_id)
    assert document["status"] == "completed"
    assert document["processed_date"] is not None
    assert store.get_document_content(db, document_id)[0]["extracted_data"] == '{"amount": 1}'

    with pytest.raises(ValueError):
        store.update_document_status(db, document_id, "archived")

    assert store.delete_document(db, document_id) is True
    assert store.get_document_content(db, document_id) == []
    assert store.get_expense(db, expense_id)["document_id"] is None
