from __future__ import annotations

import csv
import io

from app.core.clock import today
from app.services.aging import calculate_dso

REPORT_THRESHOLD = 50_000_000


def test_aging_report_rows_and_totals(api_client, auth_headers, issued_invoice):
    old = issued_invoice(amount_pence=REPORT_THRESHOLD, days_overdue=100)
    recent = issued_invoice(amount_pence=REPORT_THRESHOLD + 1000, days_overdue=20)

    res = api_client.get(
        "/collections/aging", params={"min_balance": REPORT_THRESHOLD}, headers=auth_headers
    )
    assert res.status_code == 200, res.text
    report = res.json()
    rows = {row["account_id"]: row for row in report["items"]}
    assert rows[old["account_id"]]["days_overdue"] == 100
    assert rows[old["account_id"]]["buckets"]["91_120"] == REPORT_THRESHOLD
    assert rows[old["account_id"]]["in_collections"] is False
    assert rows[recent["account_id"]]["buckets"]["1_30"] == REPORT_THRESHOLD + 1000
    assert all(row["balance_pence"] >= REPORT_THRESHOLD for row in report["items"])
    assert report["totals"]["balance_pence"] == sum(row["balance_pence"] for row in report["items"])

    ordered = [row["days_overdue"] for row in report["items"]]
    assert ordered == sorted(ordered, reverse=True)


def test_aging_summary_lists_every_bucket(api_client, auth_headers, issued_invoice):
    issued_invoice(amount_pence=2500, days_overdue=200)
    res = api_client.get("/collections/aging/summary", headers=auth_headers)
    assert res.status_code == 200, res.text
    summary = res.json()
    assert [bucket["bucket"] for bucket in summary["buckets"]] == [
        "current",
        "1_30",
        "31_60",
        "61_90",
        "91_120",
        "120_plus",
    ]
    assert summary["buckets"][-1]["label"] == "120+ Days"
    assert summary["total_ar_pence"] == sum(bucket["amount_pence"] for bucket in summary["buckets"])
    assert summary["account_count"] >= 1


def test_aging_csv_export(api_client, auth_headers, issued_invoice):
    amount = REPORT_THRESHOLD + 10_000_000
    invoice = issued_invoice(amount_pence=amount, days_overdue=65)
    account = api_client.get(f"/accounts/{invoice['account_id']}", headers=auth_headers).json()
    res = api_client.get(
        "/collections/aging/export",
        params={"format": "csv", "min_balance": amount},
        headers=auth_headers,
    )
    assert res.status_code == 200, res.text
    assert res.headers["content-type"].startswith("text/csv")
    assert f"aging-{today().isoformat()}.csv" in res.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(res.text)))
    assert rows[0][:5] == ["account_number", "patient_name", "status", "days_overdue", "balance"]
    assert rows[0][5:] == ["Current", "1-30 Days", "31-60 Days", "61-90 Days", "91-120 Days", "120+ Days"]
    ours = [row for row in rows[1:] if row[0] == account["account_number"]]
    assert len(ours) == 1
    assert ours[0][3] == "65"
    assert ours[0][4] == f"{amount / 100:.2f}"
    assert ours[0][8] == f"{amount / 100:.2f}"


def test_aging_pdf_export(api_client, auth_headers, issued_invoice):
    issued_invoice(amount_pence=4200, days_overdue=40)
    res = api_client.get("/collections/aging/export", params={"format": "pdf"}, headers=auth_headers)
    assert res.status_code == 200, res.text
    assert res.headers["content-type"] == "application/pdf"
    assert res.content.startswith(b"%PDF")


def test_aging_export_rejects_unknown_format(api_client, auth_headers):
    res = api_client.get("/collections/aging/export", params={"format": "xlsx"}, headers=auth_headers)
    assert res.status_code == 422


def test_dso_matches_formula(api_client, auth_headers, issued_invoice):
    issued_invoice(amount_pence=10000, days_overdue=10)
    res = api_client.get("/collections/dso", params={"period_days": 90}, headers=auth_headers)
    assert res.status_code == 200, res.text
    dso = res.json()
    assert dso["period_days"] == 90
    assert dso["credit_sales_pence"] > 0
    assert dso["dso"] == calculate_dso(dso["total_ar_pence"], dso["credit_sales_pence"], 90)


def test_collection_summary_counts(api_client, auth_headers, start_collection):
    before = api_client.get("/collections/summary", headers=auth_headers).json()
    collection = start_collection(amount_pence=11000)
    api_client.post(
        f"/collections/accounts/{collection['id']}/pause", json={"reason": "Query"}, headers=auth_headers
    )
    after = api_client.get("/collections/summary", headers=auth_headers).json()
    assert after["paused_count"] == before["paused_count"] + 1
    assert after["total_balance_pence"] >= before["total_balance_pence"] + 11000


def test_analytics_shape(api_client, auth_headers, start_collection):
    start_collection()
    res = api_client.get("/collections/analytics", params={"period_days": 60}, headers=auth_headers)
    assert res.status_code == 200, res.text
    payload = res.json()
    assert payload["period_days"] == 60
    assert set(payload["summary"]) == {
        "total_ar_pence",
        "in_collection_pence",
        "collection_rate",
        "average_days_to_collect",
        "dso",
        "recovery_rate",
    }
    assert set(payload["performance"]) == {
        "promise_kept_rate",
        "agency_recovery_rate",
        "write_off_rate",
        "reminder_response_rate",
    }
    assert payload["summary"]["in_collection_pence"] > 0
    assert len(payload["aging"]["buckets"]) == 6


def test_reports_need_collections_view(api_client, login_as):
    headers = login_as("front_desk")
    assert api_client.get("/collections/aging", headers=headers).status_code == 403
    assert api_client.get("/collections/dso", headers=headers).status_code == 403
