import random
from datetime import date, timedelta

from finance_assistant import categorize_expense, create_app, get_financial_year
from finance_assistant import store

RECEIPTS = [
    "Pret A Manger lunch",
    "Trainline ticket London to Leeds",
    "Premier Inn one night",
    "Uber to client site",
    "Costa coffee",
    "Office supplies",
]
YTD_KEYS = ("total_taxable_pay", "total_taxable_ni_pay", "total_paye_tax", "total_ni")


def sample_payslips(first_pay_day, months=6, gross=4200.0):
    """Monthly payslips with year-to-date totals that restart each financial year.

    Yields ``(payslip, financial_year_summary)`` pairs ready for ``store``.
    """
    ytd_year = None
    for i in range(months):
        pay_date = (first_pay_day + timedelta(days=31 * i)).replace(day=25)
        if get_financial_year(pay_date) != ytd_year:
            ytd_year = get_financial_year(pay_date)
            ytd = dict.fromkeys(YTD_KEYS, 0.0)
        tax = round(gross * 0.18, 2)
        ni = round(gross * 0.06, 2)
        for key, amount in zip(YTD_KEYS, (gross, gross, tax, ni)):
            ytd[key] = round(ytd[key] + amount, 2)
        payslip = {
            "file_name": f"payslip_{pay_date.isoformat()}.pdf",
            "pay_date": pay_date.isoformat(),
            "net_pay": round(gross - tax - ni, 2),
            "gross_pay": gross,
            "tax_paid": tax,
            "ni_paid": ni,
            "ytd_taxable_pay": ytd["total_taxable_pay"],
            "ytd_taxable_ni_pay": ytd["total_taxable_ni_pay"],
            "ytd_paye_tax": ytd["total_paye_tax"],
            "ytd_ni": ytd["total_ni"],
        }
        yield payslip, {"financial_year": ytd_year, "last_payslip_date": pay_date.isoformat(), **ytd}


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        store.create_pension(db, {"name": "Workplace Pension", "url": "https://example.com", "amount": 48250.0})
        store.create_pension(db, {"name": "SIPP", "amount": 12100.0, "notes": "Self-invested"})
        store.create_bank_account(db, {"name": "Easy Saver", "bank": "Demo Bank", "interest_rate": 4.1, "amount": 8200.0})
        store.create_bank_account(db, {"name": "Current", "bank": "Demo Bank", "amount": 1450.0})

        first_pay_day = date.today().replace(day=25) - timedelta(days=31 * 5)
        for payslip, summary in sample_payslips(first_pay_day):
            store.create_payslip(db, payslip)
            store.upsert_financial_year_summary(db, summary)

        start = date.today() - timedelta(days=30)
        expenses = []
        for i, description in enumerate(RECEIPTS):
            expenses.append(
                {
                    "file_name": f"receipt_{i + 1}.jpg",
                    "description": description,
                    "date": (start + timedelta(days=i * 4)).isoformat(),
                    "amount": round(random.uniform(4, 160), 2),
                    "category": categorize_expense(description),
                }
            )
        expense_ids = store.create_expenses(db, expenses)
        store.create_expense_report(
            db,
            f"Expense Report - {date.today().isoformat()}",
            date.today().isoformat(),
            expense_ids,
            round(sum(e["amount"] for e in expenses), 2),
        )

        last_year = get_financial_year(date.today() - timedelta(days=365))
        store.create_tax_return(
            db,
            {
                "financial_year": last_year,
                "total_tax_charge": 1834.20,
                "payment_deadline": f"{int(last_year[:4]) + 2}-01-31",
                "savings_tax": 84.20,
                "child_benefit_payback": 1750.0,
            },
        )
    print("Sample data generated.")


if __name__ == "__main__":
    main()
