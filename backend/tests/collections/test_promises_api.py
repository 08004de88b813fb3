from __future__ import annotations

from datetime import timedelta

from app.core.clock import today


def _promise(api_client, auth_headers, collection_id: int, amount: int = 10000, days_ahead: int = 7):
    res = api_client.post(
        f"/collections/accounts/{collection_id}/promises",
        json={
            "promised_amount_pence": amount,
            "promised_date": (today() + timedelta(days=days_ahead)).isoformat(),
            "notes": "Promised on the phone",
        },
        headers=auth_headers,
    )
    assert res.status_code == 201, res.text
    return res.json()


def test_create_and_list_promise(api_client, auth_headers, start_collection):
    collection = start_collection()
    promise = _promise(api_client, auth_headers, collection["id"])
    assert promise["status"] == "pending"
    assert promise["account_id"] == collection["account_id"]
    assert promise["days_overdue"] == 0

    listed = api_client.get(
        "/collections/promises", params={"account_id": collection["account_id"]}, headers=auth_headers
    )
    assert listed.status_code == 200, listed.text
    assert [item["id"] for item in listed.json()["items"]] == [promise["id"]]

    detail = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert detail["promises"][0]["id"] == promise["id"]
    assert detail["activities"][0]["activity_type"] == "promise_made"


def test_overdue_filter_and_days_overdue(api_client, auth_headers, start_collection):
    collection = start_collection()
    late = _promise(api_client, auth_headers, collection["id"], days_ahead=-2)
    assert late["days_overdue"] == 2

    overdue = api_client.get(
        "/collections/promises",
        params={"overdue": True, "account_id": collection["account_id"]},
        headers=auth_headers,
    ).json()
    assert [item["id"] for item in overdue["items"]] == [late["id"]]


def test_fulfil_full_and_partial(api_client, auth_headers, start_collection):
    collection = start_collection()
    full = _promise(api_client, auth_headers, collection["id"], amount=5000)
    part = _promise(api_client, auth_headers, collection["id"], amount=8000, days_ahead=14)

    res = api_client.post(
        f"/collections/promises/{full['id']}/fulfill",
        json={"paid_amount_pence": 5000, "paid_date": today().isoformat()},
        headers=auth_headers,
    )
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "fulfilled"

    res = api_client.post(
        f"/collections/promises/{part['id']}/fulfill",
        json={"paid_amount_pence": 3000, "paid_date": today().isoformat()},
        headers=auth_headers,
    )
    assert res.json()["status"] == "partial"
    assert res.json()["paid_amount_pence"] == 3000

    again = api_client.post(
        f"/collections/promises/{full['id']}/fulfill",
        json={"paid_amount_pence": 5000, "paid_date": today().isoformat()},
        headers=auth_headers,
    )
    assert again.status_code == 409

    broken = api_client.post(
        f"/collections/promises/{part['id']}/broken", json={"reason": "Stopped answering"}, headers=auth_headers
    )
    assert broken.status_code == 200, broken.text
    assert broken.json()["status"] == "broken"
    assert broken.json()["broken_reason"] == "Stopped answering"


def test_edit_and_cancel_pending_promise(api_client, auth_headers, start_collection):
    collection = start_collection()
    promise = _promise(api_client, auth_headers, collection["id"])
    new_date = (today() + timedelta(days=21)).isoformat()

    edited = api_client.patch(
        f"/collections/promises/{promise['id']}",
        json={"promised_amount_pence": 12000, "promised_date": new_date},
        headers=auth_headers,
    )
    assert edited.status_code == 200, edited.text
    assert edited.json()["promised_amount_pence"] == 12000
    assert edited.json()["promised_date"] == new_date

    cancelled = api_client.post(
        f"/collections/promises/{promise['id']}/cancel", json={"reason": "Paid by card"}, headers=auth_headers
    )
    assert cancelled.status_code == 200, cancelled.text
    assert cancelled.json()["status"] == "cancelled"

    locked = api_client.patch(
        f"/collections/promises/{promise['id']}", json={"promised_amount_pence": 1}, headers=auth_headers
    )
    assert locked.status_code == 409


def test_no_promises_on_closed_collection(api_client, auth_headers, start_collection):
    collection = start_collection()
    api_client.post(
        f"/collections/accounts/{collection['id']}/complete", json={"force": True}, headers=auth_headers
    )
    res = api_client.post(
        f"/collections/accounts/{collection['id']}/promises",
        json={"promised_amount_pence": 1000, "promised_date": today().isoformat()},
        headers=auth_headers,
    )
    assert res.status_code == 409


def test_promise_amount_must_be_positive(api_client, auth_headers, start_collection):
    collection = start_collection()
    res = api_client.post(
        f"/collections/accounts/{collection['id']}/promises",
        json={"promised_amount_pence": 0, "promised_date": today().isoformat()},
        headers=auth_headers,
    )
    assert res.status_code == 422


def test_unknown_promise_is_404(api_client, auth_headers):
    assert api_client.get("/collections/promises/999999", headers=auth_headers).status_code == 404
