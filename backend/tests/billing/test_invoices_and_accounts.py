from __future__ import annotations

from datetime import timedelta

from app.core.clock import today
from app.models.invoice import Invoice
from app.services.billing import generate_number


def test_issuing_invoice_ages_the_account(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=42000, days_overdue=45)
    assert invoice["status"] == "issued"
    assert invoice["invoice_number"].startswith(f"INV-{today().year}-")

    account = api_client.get(f"/accounts/{invoice['account_id']}", headers=auth_headers)
    assert account.status_code == 200, account.text
    payload = account.json()
    assert payload["current_balance_pence"] == 42000
    assert payload["aging_31_60_pence"] == 42000
    assert payload["aging_current_pence"] == 0
    assert payload["days_overdue"] == 45


def test_patient_account_endpoint(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=15000, days_overdue=5)
    patient_id = invoice["patient"]["id"]
    res = api_client.get(f"/patients/{patient_id}/account", headers=auth_headers)
    assert res.status_code == 200, res.text
    assert res.json()["id"] == invoice["account_id"]
    assert res.json()["aging_1_30_pence"] == 15000


def test_invoice_totals_apply_discounts_and_insurance(api_client, auth_headers, create_patient):
    patient = create_patient()
    res = api_client.post(
        "/invoices",
        json={
            "patient_id": patient["id"],
            "discount_pence": 1000,
            "lines": [
                {"description": "Retainer", "quantity": 2, "unit_price_pence": 10000, "discount_pence": 500},
                {"description": "Bracket repair", "quantity": 1, "unit_price_pence": 6000, "insurance_pence": 2500},
            ],
        },
        headers=auth_headers,
    )
    assert res.status_code == 201, res.text
    invoice = res.json()
    assert invoice["status"] == "draft"
    assert invoice["subtotal_pence"] == 26000
    assert invoice["adjustments_pence"] == 1500
    assert invoice["insurance_pence"] == 2500
    assert invoice["total_pence"] == 24500
    assert invoice["patient_amount_pence"] == 22000


def test_issue_without_lines_is_rejected(api_client, auth_headers, create_patient):
    patient = create_patient()
    created = api_client.post("/invoices", json={"patient_id": patient["id"]}, headers=auth_headers)
    assert created.status_code == 201, created.text
    res = api_client.post(f"/invoices/{created.json()['id']}/issue", json={}, headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["code"] == "VALIDATION_ERROR"


def test_issued_invoice_cannot_be_reissued(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice()
    res = api_client.post(f"/invoices/{invoice['id']}/issue", json={}, headers=auth_headers)
    assert res.status_code == 409


def test_invoice_payment_updates_status_and_balance(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=30000, days_overdue=10)
    part = api_client.post(
        f"/invoices/{invoice['id']}/payments",
        json={"amount_pence": 10000, "method": "card"},
        headers=auth_headers,
    )
    assert part.status_code == 201, part.text
    assert part.json()["payment_number"].startswith("PAY-")

    refreshed = api_client.get(f"/invoices/{invoice['id']}", headers=auth_headers).json()
    assert refreshed["status"] == "part_paid"
    assert refreshed["balance_pence"] == 20000

    too_much = api_client.post(
        f"/invoices/{invoice['id']}/payments",
        json={"amount_pence": 20001, "method": "card"},
        headers=auth_headers,
    )
    assert too_much.status_code == 400

    rest = api_client.post(
        f"/invoices/{invoice['id']}/payments",
        json={"amount_pence": 20000, "method": "cash"},
        headers=auth_headers,
    )
    assert rest.status_code == 201, rest.text
    assert api_client.get(f"/invoices/{invoice['id']}", headers=auth_headers).json()["status"] == "paid"

    account = api_client.get(f"/accounts/{invoice['account_id']}", headers=auth_headers).json()
    assert account["current_balance_pence"] == 0
    assert account["days_overdue"] == 0


def test_void_invoice_with_payments_conflicts(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=5000)
    api_client.post(
        f"/invoices/{invoice['id']}/payments",
        json={"amount_pence": 1000, "method": "cash"},
        headers=auth_headers,
    )
    res = api_client.post(f"/invoices/{invoice['id']}/void", headers=auth_headers)
    assert res.status_code == 409


def test_void_invoice_clears_account_balance(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=7000)
    res = api_client.post(f"/invoices/{invoice['id']}/void", headers=auth_headers)
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "void"
    account = api_client.get(f"/accounts/{invoice['account_id']}", headers=auth_headers).json()
    assert account["current_balance_pence"] == 0


def test_account_payment_is_allocated_oldest_due_first(api_client, auth_headers, issued_invoice):
    older = issued_invoice(amount_pence=20000, days_overdue=70)
    newer = issued_invoice(amount_pence=15000, days_overdue=10, patient=older["patient"])
    assert newer["account_id"] == older["account_id"]

    res = api_client.post(
        f"/accounts/{older['account_id']}/payments",
        json={"amount_pence": 25000, "method": "bank_transfer", "reference": "BACS-1"},
        headers=auth_headers,
    )
    assert res.status_code == 201, res.text
    payload = res.json()
    allocations = {item["invoice_id"]: item["amount_pence"] for item in payload["payments"]}
    assert allocations == {older["id"]: 20000, newer["id"]: 5000}
    assert payload["account"]["current_balance_pence"] == 10000
    assert payload["account"]["aging_61_90_pence"] == 0
    assert payload["account"]["aging_1_30_pence"] == 10000


def test_account_payment_cannot_exceed_balance(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=5000)
    res = api_client.post(
        f"/accounts/{invoice['account_id']}/payments",
        json={"amount_pence": 5001, "method": "card"},
        headers=auth_headers,
    )
    assert res.status_code == 400


def test_recalculate_all_accounts(api_client, auth_headers, issued_invoice):
    issued_invoice()
    res = api_client.post("/accounts/recalculate", headers=auth_headers)
    assert res.status_code == 200, res.text
    assert res.json()["accounts"] >= 1


def test_default_due_date_keeps_new_invoice_current(api_client, auth_headers, create_patient):
    patient = create_patient()
    created = api_client.post(
        "/invoices",
        json={
            "patient_id": patient["id"],
            "lines": [{"description": "Consultation", "quantity": 1, "unit_price_pence": 9000}],
        },
        headers=auth_headers,
    )
    assert created.status_code == 201, created.text
    issued = api_client.post(
        f"/invoices/{created.json()['id']}/issue",
        json={"issue_date": (today() - timedelta(days=3)).isoformat()},
        headers=auth_headers,
    )
    assert issued.status_code == 200, issued.text
    account = api_client.get(f"/accounts/{issued.json()['account_id']}", headers=auth_headers).json()
    assert account["aging_current_pence"] + account["aging_1_30_pence"] == 9000


def test_unknown_account_is_404(api_client, auth_headers):
    res = api_client.get("/accounts/999999", headers=auth_headers)
    assert res.status_code == 404


def test_numbering_continues_past_five_digits(issued_invoice, db_session):
    existing = db_session.get(Invoice, issued_invoice()["id"])
    try:
        for number in ("INV-1999-99998", "INV-1999-99999", "INV-1999-100000"):
            db_session.add(
                Invoice(
                    clinic_id=existing.clinic_id,
                    account_id=existing.account_id,
                    patient_id=existing.patient_id,
                    invoice_number=number,
                    created_by_user_id=existing.created_by_user_id,
                )
            )
        db_session.flush()
        assert (
            generate_number(db_session, Invoice.invoice_number, existing.clinic_id, "INV", year=1999)
            == "INV-1999-100001"
        )
    finally:
        db_session.rollback()
