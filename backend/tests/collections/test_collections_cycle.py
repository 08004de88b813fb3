from __future__ import annotations

import json
from datetime import timedelta

import pytest

from app.core.clock import today
from app.models.clinic import Clinic
from app.scripts import collections_run
from app.services.collections import find_open_collection, get_collection
from app.services.collections_cycle import run_collections_cycle


def _clinic_id(db_session) -> int:
    return db_session.query(Clinic).filter(Clinic.slug == "main").one().id


def test_process_enrols_overdue_accounts(api_client, auth_headers, create_workflow, issued_invoice, db_session):
    workflow = create_workflow(is_default=True, trigger_days=30)
    overdue = issued_invoice(amount_pence=22000, days_overdue=45)
    fresh = issued_invoice(amount_pence=22000, days_overdue=5)

    res = api_client.post("/collections/process", headers=auth_headers)
    assert res.status_code == 200, res.text
    counts = res.json()
    assert counts["collections_started"] >= 1
    assert counts["accounts_checked"] >= 2

    enrolled = find_open_collection(db_session, overdue["account_id"])
    assert enrolled is not None
    assert enrolled.workflow_id == workflow["id"]
    assert find_open_collection(db_session, fresh["account_id"]) is None

    audit = api_client.get("/audit", params={"action": "collections.processed"}, headers=auth_headers).json()
    assert audit[0]["entity_type"] == "clinic"
    assert audit[0]["after_json"]["collections_started"] == counts["collections_started"]


def test_process_breaks_lapsed_promises(api_client, auth_headers, start_collection):
    collection = start_collection()
    promise = api_client.post(
        f"/collections/accounts/{collection['id']}/promises",
        json={"promised_amount_pence": 5000, "promised_date": (today() - timedelta(days=5)).isoformat()},
        headers=auth_headers,
    ).json()
    within_grace = api_client.post(
        f"/collections/accounts/{collection['id']}/promises",
        json={"promised_amount_pence": 5000, "promised_date": (today() - timedelta(days=1)).isoformat()},
        headers=auth_headers,
    ).json()

    res = api_client.post("/collections/process", headers=auth_headers)
    assert res.status_code == 200, res.text
    assert res.json()["promises_broken"] >= 1

    broken = api_client.get(f"/collections/promises/{promise['id']}", headers=auth_headers).json()
    assert broken["status"] == "broken"
    assert broken["broken_reason"] == "Promise date passed"
    pending = api_client.get(f"/collections/promises/{within_grace['id']}", headers=auth_headers).json()
    assert pending["status"] == "pending"


def test_cycle_escalates_after_stage_window(start_collection, db_session):
    collection = start_collection()
    clinic_id = _clinic_id(db_session)
    try:
        early = run_collections_cycle(db_session, clinic_id=clinic_id, today=today() + timedelta(days=3))
        assert get_collection(db_session, clinic_id, collection["id"]).current_stage == 1

        counts = run_collections_cycle(db_session, clinic_id=clinic_id, today=today() + timedelta(days=11))
        assert counts["collections_escalated"] >= 1
        escalated = get_collection(db_session, clinic_id, collection["id"])
        assert escalated.current_stage == 2
        assert any(a.description.endswith("(escalated automatically)") for a in escalated.activities)
        assert early["collections_escalated"] <= counts["collections_escalated"]
    finally:
        db_session.rollback()


def test_cycle_does_not_commit(start_collection, db_session, api_client, auth_headers):
    collection = start_collection()
    clinic_id = _clinic_id(db_session)
    run_collections_cycle(db_session, clinic_id=clinic_id, today=today() + timedelta(days=30))
    db_session.rollback()
    detail = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert detail["current_stage"] == 1


def test_cli_dry_run_reports_and_rolls_back(start_collection, api_client, auth_headers, capsys):
    collection = start_collection()
    run_date = (today() + timedelta(days=11)).isoformat()

    exit_code = collections_run.main(["--clinic-slug", "main", "--date", run_date, "--dry-run"])
    assert exit_code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["date"] == run_date
    assert output["dry_run"] is True
    assert output["clinics"][0]["clinic"] == "main"
    assert output["clinics"][0]["collections_escalated"] >= 1

    detail = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert detail["current_stage"] == 1


def test_cli_rejects_unknown_clinic():
    with pytest.raises(SystemExit):
        collections_run.main(["--clinic-slug", "no-such-clinic", "--dry-run"])


def test_cli_rejects_bad_date():
    with pytest.raises(SystemExit):
        collections_run.parse_args(["--date", "18/10/2026"])


def test_settled_account_is_not_reenrolled_until_billed_again(
    api_client, auth_headers, create_workflow, start_collection, issued_invoice, db_session
):
    workflow = create_workflow(is_default=True, trigger_days=30)
    collection = start_collection(amount_pence=40000, days_overdue=45, workflow=workflow)
    settled = api_client.post(
        f"/collections/accounts/{collection['id']}/settle",
        json={"settlement_amount_pence": 30000, "notes": "Agreed 75%"},
        headers=auth_headers,
    )
    assert settled.status_code == 200, settled.text

    assert api_client.post("/collections/process", headers=auth_headers).status_code == 200
    assert find_open_collection(db_session, collection["account_id"]) is None

    issued_invoice(amount_pence=15000, days_overdue=40, patient=collection["invoice"]["patient"])
    assert api_client.post("/collections/process", headers=auth_headers).status_code == 200
    db_session.expire_all()
    reopened = find_open_collection(db_session, collection["account_id"])
    assert reopened is not None
    assert reopened.id != collection["id"]
    assert reopened.starting_balance_pence == 55000
