from __future__ import annotations

import csv
import io
import uuid

from app.core.clock import today


def _agency(api_client, auth_headers, **overrides) -> dict:
    payload = {
        "name": f"Recovery Partners {uuid.uuid4().hex[:6]}",
        "email": "referrals@recovery.example.com",
        "fee_percentage": 25,
        "min_balance_pence": 10000,
        "min_days": 90,
    }
    payload.update(overrides)
    res = api_client.post("/collections/agencies", json=payload, headers=auth_headers)
    assert res.status_code == 201, res.text
    return res.json()


def _refer(api_client, auth_headers, collection_id: int, agency_id: int):
    return api_client.post(
        f"/collections/accounts/{collection_id}/send-to-agency",
        json={"agency_id": agency_id, "notes": "Three letters ignored"},
        headers=auth_headers,
    )


def test_eligibility_checks_agency_thresholds(api_client, auth_headers, issued_invoice):
    agency = _agency(api_client, auth_headers)
    young = issued_invoice(amount_pence=50000, days_overdue=30)
    res = api_client.get(
        f"/accounts/{young['account_id']}/agency-eligibility",
        params={"agency_id": agency["id"]},
        headers=auth_headers,
    )
    assert res.status_code == 200, res.text
    assert res.json()["eligible"] is False
    assert res.json()["reason"] == "Account must be at least 90 days overdue"

    small = issued_invoice(amount_pence=5000, days_overdue=150)
    res = api_client.get(
        f"/accounts/{small['account_id']}/agency-eligibility",
        params={"agency_id": agency["id"]},
        headers=auth_headers,
    ).json()
    assert res["eligible"] is False
    assert res["reason"] == "Balance below agency minimum of £100.00"


def test_send_to_agency_and_record_payments(api_client, auth_headers, start_collection):
    agency = _agency(api_client, auth_headers)
    collection = start_collection(amount_pence=40000, days_overdue=150)

    sent = _refer(api_client, auth_headers, collection["id"], agency["id"])
    assert sent.status_code == 200, sent.text
    detail = sent.json()
    assert detail["status"] == "agency"
    referral = detail["active_referral"]
    assert referral["amount_referred_pence"] == 40000
    assert referral["referral_number"].startswith("REF-")

    again = api_client.get(
        f"/accounts/{collection['account_id']}/agency-eligibility", headers=auth_headers
    ).json()
    assert again["eligible"] is False

    first = api_client.post(
        "/collections/agencies/payments",
        json={
            "referral_id": referral["id"],
            "gross_amount_pence": 10000,
            "agency_fee_pence": 2500,
            "payment_date": today().isoformat(),
            "agency_reference": "RP-001",
        },
        headers=auth_headers,
    )
    assert first.status_code == 201, first.text
    assert first.json()["net_amount_pence"] == 7500

    account = api_client.get(f"/accounts/{collection['account_id']}", headers=auth_headers).json()
    assert account["current_balance_pence"] == 30000

    referrals = api_client.get(
        f"/collections/agencies/{agency['id']}/referrals", headers=auth_headers
    ).json()
    assert referrals[0]["status"] == "partial"
    assert referrals[0]["outstanding_pence"] == 30000

    too_much = api_client.post(
        "/collections/agencies/payments",
        json={"referral_id": referral["id"], "gross_amount_pence": 30001, "payment_date": today().isoformat()},
        headers=auth_headers,
    )
    assert too_much.status_code == 400

    rest = api_client.post(
        "/collections/agencies/payments",
        json={"referral_id": referral["id"], "gross_amount_pence": 30000, "payment_date": today().isoformat()},
        headers=auth_headers,
    )
    assert rest.status_code == 201, rest.text

    final = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert final["status"] == "completed"
    assert final["current_balance_pence"] == 0
    referrals = api_client.get(
        f"/collections/agencies/{agency['id']}/referrals", headers=auth_headers
    ).json()
    assert referrals[0]["status"] == "collected"

    payments = api_client.get(
        "/payments", params={"account_id": collection["account_id"]}, headers=auth_headers
    ).json()
    assert {payment["method"] for payment in payments} == {"agency"}


def test_ineligible_referral_is_rejected(api_client, auth_headers, start_collection):
    agency = _agency(api_client, auth_headers, min_days=365)
    collection = start_collection(days_overdue=45)
    res = _refer(api_client, auth_headers, collection["id"], agency["id"])
    assert res.status_code == 400
    assert res.json()["code"] == "NOT_ELIGIBLE"


def test_recall_from_agency(api_client, auth_headers, start_collection):
    agency = _agency(api_client, auth_headers)
    collection = start_collection(amount_pence=25000, days_overdue=120)
    referral = _refer(api_client, auth_headers, collection["id"], agency["id"]).json()["active_referral"]

    recalled = api_client.post(
        f"/collections/accounts/{collection['id']}/recall",
        json={"reason": "Patient disputed the charge"},
        headers=auth_headers,
    )
    assert recalled.status_code == 200, recalled.text
    assert recalled.json()["status"] == "active"
    assert recalled.json()["active_referral"] is None

    referrals = api_client.get(
        f"/collections/agencies/{agency['id']}/referrals", params={"status": "recalled"}, headers=auth_headers
    ).json()
    assert [item["id"] for item in referrals] == [referral["id"]]
    assert referrals[0]["recall_reason"] == "Patient disputed the charge"

    not_there = api_client.post(
        f"/collections/accounts/{collection['id']}/recall", json={"reason": "Again"}, headers=auth_headers
    )
    assert not_there.status_code == 409


def test_export_lists_active_referrals(api_client, auth_headers, start_collection):
    agency = _agency(api_client, auth_headers)
    collection = start_collection(amount_pence=33300, days_overdue=130)
    _refer(api_client, auth_headers, collection["id"], agency["id"])

    res = api_client.get(f"/collections/agencies/{agency['id']}/export.csv", headers=auth_headers)
    assert res.status_code == 200, res.text
    assert res.headers["content-type"].startswith("text/csv")
    assert f"agency-{agency['id']}-referrals.csv" in res.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(res.text)))
    assert rows[0][0] == "referral_number"
    assert len(rows) == 2
    assert rows[1][5] == "333.00"


def test_retire_agency(api_client, auth_headers, start_collection):
    unused = _agency(api_client, auth_headers)
    res = api_client.delete(f"/collections/agencies/{unused['id']}", headers=auth_headers)
    assert res.status_code == 200, res.text
    assert res.json()["result"] == "deleted"
    assert api_client.get(f"/collections/agencies/{unused['id']}", headers=auth_headers).status_code == 404

    used = _agency(api_client, auth_headers)
    collection = start_collection(days_overdue=150)
    _refer(api_client, auth_headers, collection["id"], used["id"])
    res = api_client.delete(f"/collections/agencies/{used['id']}", headers=auth_headers)
    assert res.json()["result"] == "deactivated"
    assert api_client.get(f"/collections/agencies/{used['id']}", headers=auth_headers).json()["is_active"] is False


def test_update_agency(api_client, auth_headers):
    agency = _agency(api_client, auth_headers)
    res = api_client.patch(
        f"/collections/agencies/{agency['id']}", json={"fee_percentage": 30.5}, headers=auth_headers
    )
    assert res.status_code == 200, res.text
    assert res.json()["fee_percentage"] == 30.5
    assert res.json()["min_days"] == 90


def _assert_referral_returned(api_client, auth_headers, agency_id: int, account_id: int, referral_id: int):
    referrals = api_client.get(f"/collections/agencies/{agency_id}/referrals", headers=auth_headers).json()
    assert [(item["id"], item["status"]) for item in referrals] == [(referral_id, "returned")]

    rows = list(
        csv.reader(
            io.StringIO(
                api_client.get(f"/collections/agencies/{agency_id}/export.csv", headers=auth_headers).text
            )
        )
    )
    assert len(rows) == 1

    late = api_client.post(
        "/collections/agencies/payments",
        json={"referral_id": referral_id, "gross_amount_pence": 100, "payment_date": today().isoformat()},
        headers=auth_headers,
    )
    assert late.status_code == 409

    eligibility = api_client.get(f"/accounts/{account_id}/agency-eligibility", headers=auth_headers).json()
    assert eligibility["reason"] != "Account already referred to an agency"


def test_write_off_returns_agency_referral(api_client, auth_headers, start_collection):
    agency = _agency(api_client, auth_headers)
    collection = start_collection(amount_pence=20000, days_overdue=150)
    referral = _refer(api_client, auth_headers, collection["id"], agency["id"]).json()["active_referral"]

    write_off = api_client.post(
        "/collections/write-offs",
        json={"account_id": collection["account_id"], "amount_pence": 20000, "reason": "deceased"},
        headers=auth_headers,
    ).json()
    approved = api_client.post(
        f"/collections/write-offs/{write_off['id']}/approve", json={}, headers=auth_headers
    )
    assert approved.status_code == 200, approved.text

    detail = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert detail["status"] == "written_off"
    assert detail["active_referral"] is None
    _assert_referral_returned(api_client, auth_headers, agency["id"], collection["account_id"], referral["id"])


def test_settlement_returns_agency_referral(api_client, auth_headers, start_collection):
    agency = _agency(api_client, auth_headers)
    collection = start_collection(amount_pence=30000, days_overdue=150)
    referral = _refer(api_client, auth_headers, collection["id"], agency["id"]).json()["active_referral"]

    settled = api_client.post(
        f"/collections/accounts/{collection['id']}/settle",
        json={"settlement_amount_pence": 20000, "notes": "Agreed via agency"},
        headers=auth_headers,
    )
    assert settled.status_code == 200, settled.text
    assert settled.json()["status"] == "settled"
    _assert_referral_returned(api_client, auth_headers, agency["id"], collection["account_id"], referral["id"])


def test_forced_completion_returns_agency_referral(api_client, auth_headers, start_collection):
    agency = _agency(api_client, auth_headers)
    collection = start_collection(amount_pence=30000, days_overdue=150)
    referral = _refer(api_client, auth_headers, collection["id"], agency["id"]).json()["active_referral"]

    completed = api_client.post(
        f"/collections/accounts/{collection['id']}/complete",
        json={"force": True, "notes": "Closed by practice"},
        headers=auth_headers,
    )
    assert completed.status_code == 200, completed.text
    assert completed.json()["status"] == "completed"
    _assert_referral_returned(api_client, auth_headers, agency["id"], collection["account_id"], referral["id"])
