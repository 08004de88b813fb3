from __future__ import annotations


def _request(api_client, headers, account_id: int, amount: int, **extra):
    payload = {"account_id": account_id, "amount_pence": amount, "reason": "uncollectible"}
    payload.update(extra)
    return api_client.post("/collections/write-offs", json=payload, headers=headers)


def test_approved_write_off_closes_collection(api_client, auth_headers, login_as, start_collection):
    collection = start_collection(amount_pence=18000)
    manager = login_as("office_manager")

    requested = _request(api_client, manager, collection["account_id"], 18000, reason_details="Moved abroad")
    assert requested.status_code == 201, requested.text
    write_off = requested.json()
    assert write_off["status"] == "pending"
    assert write_off["account_collection_id"] == collection["id"]
    assert write_off["write_off_number"].startswith("WO-")

    own = api_client.post(f"/collections/write-offs/{write_off['id']}/approve", json={}, headers=manager)
    assert own.status_code == 403
    assert own.json()["code"] == "FORBIDDEN"

    approved = api_client.post(
        f"/collections/write-offs/{write_off['id']}/approve",
        json={"notes": "Agreed at finance meeting"},
        headers=auth_headers,
    )
    assert approved.status_code == 200, approved.text
    assert approved.json()["status"] == "approved"
    assert approved.json()["approved_by_user_id"] is not None

    detail = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert detail["status"] == "written_off"
    assert detail["written_off_pence"] == 18000
    assert detail["current_balance_pence"] == 0

    invoice = api_client.get(f"/invoices/{collection['invoice']['id']}", headers=auth_headers).json()
    assert invoice["status"] == "paid"
    assert invoice["written_off_pence"] == 18000


def test_partial_write_off_keeps_collection_open(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=20000)
    write_off = _request(api_client, auth_headers, collection["account_id"], 5000, reason="small_balance").json()
    res = api_client.post(f"/collections/write-offs/{write_off['id']}/approve", json={}, headers=auth_headers)
    assert res.status_code == 200, res.text

    detail = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert detail["status"] == "active"
    assert detail["current_balance_pence"] == 15000
    assert detail["activities"][0]["activity_type"] == "written_off"


def test_write_off_cannot_exceed_balance(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=10000)
    res = _request(api_client, auth_headers, invoice["account_id"], 10001)
    assert res.status_code == 400


def test_one_pending_write_off_per_invoice(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=10000)
    first = _request(api_client, auth_headers, invoice["account_id"], 4000, invoice_id=invoice["id"])
    assert first.status_code == 201, first.text
    second = _request(api_client, auth_headers, invoice["account_id"], 4000, invoice_id=invoice["id"])
    assert second.status_code == 409


def test_unknown_invoice_is_404(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice()
    res = _request(api_client, auth_headers, invoice["account_id"], 100, invoice_id=999999)
    assert res.status_code == 404


def test_reject_write_off(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=9000)
    write_off = _request(api_client, auth_headers, invoice["account_id"], 9000).json()
    rejected = api_client.post(
        f"/collections/write-offs/{write_off['id']}/reject",
        json={"reason": "Patient has agreed a plan"},
        headers=auth_headers,
    )
    assert rejected.status_code == 200, rejected.text
    assert rejected.json()["status"] == "rejected"
    assert rejected.json()["rejection_reason"] == "Patient has agreed a plan"

    account = api_client.get(f"/accounts/{invoice['account_id']}", headers=auth_headers).json()
    assert account["current_balance_pence"] == 9000

    late_approval = api_client.post(
        f"/collections/write-offs/{write_off['id']}/approve", json={}, headers=auth_headers
    )
    assert late_approval.status_code == 409


def test_recoveries(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=6000)
    write_off = _request(api_client, auth_headers, invoice["account_id"], 6000, reason="bankruptcy").json()

    early = api_client.post(
        f"/collections/write-offs/{write_off['id']}/recover", json={"amount_pence": 100}, headers=auth_headers
    )
    assert early.status_code == 409

    api_client.post(f"/collections/write-offs/{write_off['id']}/approve", json={}, headers=auth_headers)
    part = api_client.post(
        f"/collections/write-offs/{write_off['id']}/recover",
        json={"amount_pence": 2000, "payment_reference": "TRUSTEE-1"},
        headers=auth_headers,
    )
    assert part.status_code == 200, part.text
    assert part.json()["status"] == "partially_recovered"
    assert part.json()["recovery_reference"] == "TRUSTEE-1"

    over = api_client.post(
        f"/collections/write-offs/{write_off['id']}/recover", json={"amount_pence": 4001}, headers=auth_headers
    )
    assert over.status_code == 400

    rest = api_client.post(
        f"/collections/write-offs/{write_off['id']}/recover", json={"amount_pence": 4000}, headers=auth_headers
    )
    assert rest.json()["status"] == "fully_recovered"
    assert rest.json()["recovered_amount_pence"] == 6000


def test_list_write_offs_with_totals(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=30000)
    _request(api_client, auth_headers, invoice["account_id"], 1000)
    _request(api_client, auth_headers, invoice["account_id"], 2500, reason="hardship")

    res = api_client.get(
        "/collections/write-offs", params={"account_id": invoice["account_id"]}, headers=auth_headers
    )
    assert res.status_code == 200, res.text
    page = res.json()
    assert page["total"] == 2
    assert page["totals"]["count"] == 2
    assert page["totals"]["amount_pence"] == 3500
    assert page["totals"]["recovered_pence"] == 0

    hardship = api_client.get(
        "/collections/write-offs",
        params={"account_id": invoice["account_id"], "reason": "hardship"},
        headers=auth_headers,
    ).json()
    assert [item["amount_pence"] for item in hardship["items"]] == [2500]

    pending = api_client.get(
        "/collections/write-offs",
        params={"account_id": invoice["account_id"], "pending_only": True, "status": "approved"},
        headers=auth_headers,
    ).json()
    assert pending["total"] == 2
