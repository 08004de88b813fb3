from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.core.clock import today, utcnow
from app.core.errors import InvalidStateError
from app.models.collections import AccountCollection, CollectionStatus, CollectionWorkflow
from app.services.collections import ALLOWED_TRANSITIONS, can_transition, transition


def _activity_types(detail: dict) -> list[str]:
    return [item["activity_type"] for item in detail["activities"]]


def test_start_collection_snapshots_balance(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=64000, days_overdue=45)
    assert collection["status"] == "active"
    assert collection["current_stage"] == 1
    assert collection["starting_balance_pence"] == 64000
    assert collection["current_balance_pence"] == 64000
    assert [stage["stage_number"] for stage in collection["stages"]] == [1, 2, 3]
    assert _activity_types(collection) == ["workflow_started"]

    account = api_client.get(f"/accounts/{collection['account_id']}", headers=auth_headers).json()
    assert account["status"] == "collections"


def test_second_open_collection_conflicts(api_client, auth_headers, start_collection):
    collection = start_collection()
    res = api_client.post(
        "/collections/accounts",
        json={"account_id": collection["account_id"], "workflow_id": collection["workflow_id"]},
        headers=auth_headers,
    )
    assert res.status_code == 409
    assert res.json()["code"] == "INVALID_STATE"


def test_start_requires_outstanding_balance(api_client, auth_headers, issued_invoice, create_workflow):
    invoice = issued_invoice(amount_pence=8000)
    api_client.post(
        f"/invoices/{invoice['id']}/payments",
        json={"amount_pence": 8000, "method": "cash"},
        headers=auth_headers,
    )
    workflow = create_workflow()
    res = api_client.post(
        "/collections/accounts",
        json={"account_id": invoice["account_id"], "workflow_id": workflow["id"]},
        headers=auth_headers,
    )
    assert res.status_code == 400


def test_start_without_default_workflow(api_client, auth_headers, issued_invoice, db_session):
    db_session.execute(update(CollectionWorkflow).values(is_default=False))
    db_session.commit()
    invoice = issued_invoice()
    res = api_client.post(
        "/collections/accounts", json={"account_id": invoice["account_id"]}, headers=auth_headers
    )
    assert res.status_code == 400
    assert res.json()["code"] == "NO_DEFAULT_WORKFLOW"


def test_start_uses_default_workflow(api_client, auth_headers, issued_invoice, create_workflow):
    workflow = create_workflow(is_default=True)
    invoice = issued_invoice()
    res = api_client.post(
        "/collections/accounts", json={"account_id": invoice["account_id"]}, headers=auth_headers
    )
    assert res.status_code == 201, res.text
    assert res.json()["workflow_id"] == workflow["id"]


def test_pause_and_resume(api_client, auth_headers, start_collection):
    collection = start_collection()
    cid = collection["id"]

    paused = api_client.post(
        f"/collections/accounts/{cid}/pause", json={"reason": "Patient in hospital"}, headers=auth_headers
    )
    assert paused.status_code == 200, paused.text
    assert paused.json()["status"] == "paused"
    assert paused.json()["pause_reason"] == "Patient in hospital"

    again = api_client.post(
        f"/collections/accounts/{cid}/pause", json={"reason": "Still away"}, headers=auth_headers
    )
    assert again.status_code == 409

    advance = api_client.post(f"/collections/accounts/{cid}/advance", headers=auth_headers)
    assert advance.status_code == 409

    resumed = api_client.post(
        f"/collections/accounts/{cid}/resume", json={"notes": "Back home"}, headers=auth_headers
    )
    assert resumed.status_code == 200, resumed.text
    body = resumed.json()
    assert body["status"] == "active"
    assert body["paused_at"] is None
    assert body["pause_reason"] is None
    assert _activity_types(body)[:2] == ["resumed", "paused"]


def test_pause_requires_reason(api_client, auth_headers, start_collection):
    collection = start_collection()
    res = api_client.post(
        f"/collections/accounts/{collection['id']}/pause", json={"reason": ""}, headers=auth_headers
    )
    assert res.status_code == 422


def test_advance_until_final_stage(api_client, auth_headers, start_collection):
    collection = start_collection()
    cid = collection["id"]
    second = api_client.post(f"/collections/accounts/{cid}/advance", headers=auth_headers)
    assert second.status_code == 200, second.text
    assert second.json()["current_stage"] == 2
    third = api_client.post(f"/collections/accounts/{cid}/advance", headers=auth_headers)
    assert third.json()["current_stage"] == 3
    final = api_client.post(f"/collections/accounts/{cid}/advance", headers=auth_headers)
    assert final.status_code == 409
    assert final.json()["detail"] == "Already at final stage"


def test_complete_requires_zero_balance_unless_forced(api_client, auth_headers, start_collection):
    collection = start_collection()
    cid = collection["id"]
    refused = api_client.post(f"/collections/accounts/{cid}/complete", json={}, headers=auth_headers)
    assert refused.status_code == 409

    forced = api_client.post(
        f"/collections/accounts/{cid}/complete",
        json={"force": True, "notes": "Closed by office manager"},
        headers=auth_headers,
    )
    assert forced.status_code == 200, forced.text
    assert forced.json()["status"] == "completed"
    assert forced.json()["completed_at"] is not None

    terminal = api_client.post(
        f"/collections/accounts/{cid}/pause", json={"reason": "Too late"}, headers=auth_headers
    )
    assert terminal.status_code == 409


def test_full_payment_completes_collection(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=12000)
    res = api_client.post(
        f"/accounts/{collection['account_id']}/payments",
        json={"amount_pence": 12000, "method": "card"},
        headers=auth_headers,
    )
    assert res.status_code == 201, res.text

    detail = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert detail["status"] == "completed"
    assert detail["current_balance_pence"] == 0
    assert detail["paid_amount_pence"] == 12000
    assert "payment_received" in _activity_types(detail)

    audit = api_client.get(
        "/audit",
        params={"entity_type": "account_collection", "entity_id": str(collection["id"])},
        headers=auth_headers,
    ).json()
    assert "account_collection.completed" in {entry["action"] for entry in audit}


def test_partial_payment_tracks_progress(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=20000)
    api_client.post(
        f"/accounts/{collection['account_id']}/payments",
        json={"amount_pence": 5000, "method": "card"},
        headers=auth_headers,
    )
    detail = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert detail["status"] == "active"
    assert detail["current_balance_pence"] == 15000
    assert detail["paid_amount_pence"] == 5000


def test_backdated_payment_counts_towards_collection(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=12000)
    res = api_client.post(
        f"/accounts/{collection['account_id']}/payments",
        json={
            "amount_pence": 12000,
            "method": "bank_transfer",
            "paid_at": (utcnow() - timedelta(days=1)).isoformat(),
        },
        headers=auth_headers,
    )
    assert res.status_code == 201, res.text

    detail = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert detail["status"] == "completed"
    assert detail["current_balance_pence"] == 0
    assert detail["paid_amount_pence"] == 12000
    assert "payment_received" in _activity_types(detail)


def test_payment_plan_transition(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=30000)
    plan = api_client.post(
        "/payment-plans",
        json={
            "account_id": collection["account_id"],
            "total_pence": 30000,
            "number_of_payments": 6,
            "start_date": today().isoformat(),
        },
        headers=auth_headers,
    ).json()

    res = api_client.post(
        f"/collections/accounts/{collection['id']}/payment-plan",
        json={"plan_id": plan["id"]},
        headers=auth_headers,
    )
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "payment_plan"
    assert res.json()["activities"][0]["activity_type"] == "manual_note"

    resumed = api_client.post(f"/collections/accounts/{collection['id']}/resume", headers=auth_headers)
    assert resumed.json()["status"] == "active"


def test_settle_closes_collection(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=40000)
    res = api_client.post(
        f"/collections/accounts/{collection['id']}/settle",
        json={"settlement_amount_pence": 30000, "notes": "Agreed 75%"},
        headers=auth_headers,
    )
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "settled"
    assert res.json()["activities"][0]["description"] == "Settled for £300.00: Agreed 75%"


def test_manual_activity(api_client, auth_headers, start_collection):
    collection = start_collection()
    res = api_client.post(
        f"/collections/accounts/{collection['id']}/activities",
        json={
            "activity_type": "phone_call",
            "description": "Spoke to parent, will call back Friday",
            "channel": "phone",
            "response_received": True,
        },
        headers=auth_headers,
    )
    assert res.status_code == 201, res.text
    assert res.json()["stage_number"] == 1
    assert res.json()["performed_by_user_id"] is not None


def test_list_filters_by_status(api_client, auth_headers, start_collection):
    collection = start_collection()
    api_client.post(
        f"/collections/accounts/{collection['id']}/pause", json={"reason": "Dispute"}, headers=auth_headers
    )
    res = api_client.get(
        "/collections/accounts",
        params={"status": "paused", "workflow_id": collection["workflow_id"]},
        headers=auth_headers,
    )
    assert res.status_code == 200, res.text
    page = res.json()
    assert page["total"] == 1
    assert page["items"][0]["id"] == collection["id"]
    assert page["total_pages"] == 1

    bad_sort = api_client.get("/collections/accounts", params={"sort_by": "nope"}, headers=auth_headers)
    assert bad_sort.status_code == 400


def test_collection_permissions_by_role(api_client, login_as, start_collection):
    collection = start_collection()
    headers = login_as("billing")
    res = api_client.post(
        f"/collections/accounts/{collection['id']}/advance", headers=headers
    )
    assert res.status_code == 200, res.text

    front_desk = login_as("front_desk")
    denied = api_client.get("/collections/accounts", headers=front_desk)
    assert denied.status_code == 403


@pytest.mark.parametrize("current", list(CollectionStatus))
@pytest.mark.parametrize("target", list(CollectionStatus))
def test_transition_table(current, target):
    allowed = target in ALLOWED_TRANSITIONS[current]
    assert can_transition(current, target) is allowed
    if allowed:
        return
    collection = AccountCollection(status=current, current_stage=1, last_action_at=None, completed_at=None)
    with pytest.raises(InvalidStateError):
        transition(None, collection, target)
    assert collection.status == current
    assert collection.last_action_at is None
    assert collection.completed_at is None


def test_terminal_statuses_have_no_exits():
    for status in (CollectionStatus.settled, CollectionStatus.written_off, CollectionStatus.completed):
        assert ALLOWED_TRANSITIONS[status] == frozenset()


def _snapshot(api_client, auth_headers, collection_id: int) -> tuple:
    detail = api_client.get(f"/collections/accounts/{collection_id}", headers=auth_headers).json()
    return (
        detail["status"],
        detail["current_stage"],
        detail["last_action_at"],
        detail["completed_at"],
        len(detail["activities"]),
    )


def _agency_id(api_client, auth_headers) -> int:
    res = api_client.post(
        "/collections/agencies",
        json={"name": f"Northern Recoveries {uuid.uuid4().hex[:6]}", "min_days": 90},
        headers=auth_headers,
    )
    assert res.status_code == 201, res.text
    return res.json()["id"]


def test_payment_plan_collection_cannot_go_to_agency(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=30000, days_overdue=150)
    plan = api_client.post(
        "/payment-plans",
        json={
            "account_id": collection["account_id"],
            "total_pence": 30000,
            "number_of_payments": 3,
            "start_date": today().isoformat(),
        },
        headers=auth_headers,
    ).json()
    api_client.post(
        f"/collections/accounts/{collection['id']}/payment-plan",
        json={"plan_id": plan["id"]},
        headers=auth_headers,
    )
    before = _snapshot(api_client, auth_headers, collection["id"])
    assert before[0] == "payment_plan"

    res = api_client.post(
        f"/collections/accounts/{collection['id']}/send-to-agency",
        json={"agency_id": _agency_id(api_client, auth_headers)},
        headers=auth_headers,
    )
    assert res.status_code == 409
    assert res.json()["code"] == "INVALID_STATE"
    assert _snapshot(api_client, auth_headers, collection["id"]) == before


def test_agency_collection_cannot_be_paused(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=30000, days_overdue=150)
    sent = api_client.post(
        f"/collections/accounts/{collection['id']}/send-to-agency",
        json={"agency_id": _agency_id(api_client, auth_headers)},
        headers=auth_headers,
    )
    assert sent.status_code == 200, sent.text
    before = _snapshot(api_client, auth_headers, collection["id"])

    res = api_client.post(
        f"/collections/accounts/{collection['id']}/pause", json={"reason": "Query"}, headers=auth_headers
    )
    assert res.status_code == 409
    assert _snapshot(api_client, auth_headers, collection["id"]) == before


def test_settled_collection_cannot_be_settled_again(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=40000)
    api_client.post(
        f"/collections/accounts/{collection['id']}/settle",
        json={"settlement_amount_pence": 30000},
        headers=auth_headers,
    )
    before = _snapshot(api_client, auth_headers, collection["id"])
    assert before[0] == "settled"

    res = api_client.post(
        f"/collections/accounts/{collection['id']}/settle",
        json={"settlement_amount_pence": 10000},
        headers=auth_headers,
    )
    assert res.status_code == 409
    assert _snapshot(api_client, auth_headers, collection["id"]) == before
