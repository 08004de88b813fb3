from __future__ import annotations

from app.core.clock import today


def _create_plan(api_client, auth_headers, account_id: int, **overrides):
    payload = {
        "account_id": account_id,
        "total_pence": 360000,
        "down_payment_pence": 60000,
        "number_of_payments": 12,
        "start_date": today().isoformat(),
    }
    payload.update(overrides)
    return api_client.post("/payment-plans", json=payload, headers=auth_headers)


def test_create_payment_plan_computes_instalments(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice()
    res = _create_plan(api_client, auth_headers, invoice["account_id"])
    assert res.status_code == 201, res.text
    plan = res.json()
    assert plan["status"] == "active"
    assert plan["financed_pence"] == 300000
    assert plan["monthly_payment_pence"] == 25000
    assert plan["remaining_pence"] == 300000
    assert plan["plan_number"].startswith("PP-")

    listed = api_client.get(
        "/payment-plans", params={"account_id": invoice["account_id"]}, headers=auth_headers
    )
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [plan["id"]]


def test_down_payment_over_total_is_rejected(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice()
    res = _create_plan(
        api_client, auth_headers, invoice["account_id"], total_pence=1000, down_payment_pence=2000
    )
    assert res.status_code == 400


def test_cancel_payment_plan_once(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice()
    plan = _create_plan(api_client, auth_headers, invoice["account_id"]).json()

    cancelled = api_client.post(
        f"/payment-plans/{plan['id']}/cancel", json={"reason": "Patient paid in full"}, headers=auth_headers
    )
    assert cancelled.status_code == 200, cancelled.text
    assert cancelled.json()["status"] == "cancelled"
    assert "Patient paid in full" in cancelled.json()["notes"]

    again = api_client.post(f"/payment-plans/{plan['id']}/cancel", headers=auth_headers)
    assert again.status_code == 409


def test_active_plan_blocks_agency_eligibility(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=50000, days_overdue=150)
    before = api_client.get(
        f"/accounts/{invoice['account_id']}/agency-eligibility", headers=auth_headers
    )
    assert before.status_code == 200, before.text
    assert before.json()["eligible"] is True

    _create_plan(api_client, auth_headers, invoice["account_id"], total_pence=50000, down_payment_pence=0)
    after = api_client.get(
        f"/accounts/{invoice['account_id']}/agency-eligibility", headers=auth_headers
    ).json()
    assert after["eligible"] is False
    assert after["reason"] == "Account has an active payment plan"
