from datetime import date

from generate_sample_data import sample_payslips


def test_year_to_date_restarts_at_financial_year_boundary():
    rows = list(sample_payslips(date(2025, 1, 25), months=6, gross=1000.0))

    pay_dates = [payslip["pay_date"] for payslip, _ in rows]
    assert pay_dates == ["2025-01-25", "2025-02-25", "2025-03-25", "2025-04-25", "2025-05-25", "2025-06-25"]

    march, march_summary = rows[2]
    april, april_summary = rows[3]
    assert march["ytd_taxable_pay"] == 3000.0
    assert march_summary["financial_year"] == "2024/25"
    assert april["ytd_taxable_pay"] == 1000.0
    assert april["ytd_paye_tax"] == 180.0
    assert april_summary == {
        "financial_year": "2025/26",
        "last_payslip_date": "2025-04-25",
        "total_taxable_pay": 1000.0,
        "total_taxable_ni_pay": 1000.0,
        "total_paye_tax": 180.0,
        "total_ni": 60.0,
    }
    assert rows[-1][1]["total_taxable_pay"] == 3000.0
