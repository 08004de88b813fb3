from __future__ import annotations


def test_create_workflow_orders_stages(api_client, auth_headers, create_workflow):
    workflow = create_workflow(
        stages=[
            {"stage_number": 2, "name": "Letter", "actions": [{"type": "letter", "template_id": "final"}]},
            {"stage_number": 1, "name": "Email", "escalate_after_days": 7, "actions": [{"type": "email"}]},
        ]
    )
    assert [stage["stage_number"] for stage in workflow["stages"]] == [1, 2]
    assert workflow["stages"][1]["actions"][0]["type"] == "letter"
    assert workflow["is_default"] is False

    fetched = api_client.get(f"/collections/workflows/{workflow['id']}", headers=auth_headers)
    assert fetched.status_code == 200
    assert fetched.json()["name"] == workflow["name"]


def test_workflow_needs_stages(api_client, auth_headers):
    res = api_client.post(
        "/collections/workflows", json={"name": "Empty", "stages": []}, headers=auth_headers
    )
    assert res.status_code == 422


def test_duplicate_stage_numbers_rejected(api_client, auth_headers):
    res = api_client.post(
        "/collections/workflows",
        json={
            "name": "Duplicated",
            "stages": [
                {"stage_number": 1, "name": "One"},
                {"stage_number": 1, "name": "Also one"},
            ],
        },
        headers=auth_headers,
    )
    assert res.status_code == 400


def test_only_one_default_workflow(api_client, auth_headers, create_workflow):
    first = create_workflow(is_default=True)
    second = create_workflow(is_default=True)
    assert api_client.get(f"/collections/workflows/{first['id']}", headers=auth_headers).json()["is_default"] is False
    assert api_client.get(f"/collections/workflows/{second['id']}", headers=auth_headers).json()["is_default"] is True

    promoted = api_client.patch(
        f"/collections/workflows/{first['id']}", json={"is_default": True}, headers=auth_headers
    )
    assert promoted.status_code == 200, promoted.text
    assert api_client.get(f"/collections/workflows/{second['id']}", headers=auth_headers).json()["is_default"] is False


def test_patch_only_touches_sent_fields(api_client, auth_headers, create_workflow):
    workflow = create_workflow(trigger_days=45)
    res = api_client.patch(
        f"/collections/workflows/{workflow['id']}", json={"name": "Renamed"}, headers=auth_headers
    )
    assert res.status_code == 200, res.text
    assert res.json()["name"] == "Renamed"
    assert res.json()["trigger_days"] == 45


def test_stage_crud(api_client, auth_headers, create_workflow):
    workflow = create_workflow()
    wid = workflow["id"]

    added = api_client.post(
        f"/collections/workflows/{wid}/stages",
        json={"stage_number": 4, "name": "Agency review", "actions": [{"type": "send_to_agency"}]},
        headers=auth_headers,
    )
    assert added.status_code == 201, added.text
    stage_id = added.json()["id"]

    clash = api_client.post(
        f"/collections/workflows/{wid}/stages", json={"stage_number": 4, "name": "Dup"}, headers=auth_headers
    )
    assert clash.status_code == 400

    renamed = api_client.patch(
        f"/collections/workflows/{wid}/stages/{stage_id}",
        json={"name": "Agency referral", "escalate_after_days": 21},
        headers=auth_headers,
    )
    assert renamed.status_code == 200, renamed.text
    assert renamed.json()["name"] == "Agency referral"
    assert renamed.json()["escalate_after_days"] == 21

    removed = api_client.delete(f"/collections/workflows/{wid}/stages/{stage_id}", headers=auth_headers)
    assert removed.status_code == 204
    detail = api_client.get(f"/collections/workflows/{wid}", headers=auth_headers).json()
    assert [stage["stage_number"] for stage in detail["stages"]] == [1, 2, 3]

    missing = api_client.delete(f"/collections/workflows/{wid}/stages/{stage_id}", headers=auth_headers)
    assert missing.status_code == 404


def test_last_stage_cannot_be_removed(api_client, auth_headers, create_workflow):
    workflow = create_workflow(stages=[{"stage_number": 1, "name": "Only"}])
    stage_id = workflow["stages"][0]["id"]
    res = api_client.delete(f"/collections/workflows/{workflow['id']}/stages/{stage_id}", headers=auth_headers)
    assert res.status_code == 409


def test_stage_with_open_collections_is_protected(api_client, auth_headers, start_collection):
    collection = start_collection()
    workflow = collection["workflow"]
    first_stage = workflow["stages"][0]
    res = api_client.delete(
        f"/collections/workflows/{workflow['id']}/stages/{first_stage['id']}", headers=auth_headers
    )
    assert res.status_code == 409
    renumber = api_client.patch(
        f"/collections/workflows/{workflow['id']}/stages/{first_stage['id']}",
        json={"stage_number": 9},
        headers=auth_headers,
    )
    assert renumber.status_code == 409


def test_delete_workflow(api_client, auth_headers, create_workflow, start_collection):
    in_use = start_collection()
    blocked = api_client.delete(f"/collections/workflows/{in_use['workflow_id']}", headers=auth_headers)
    assert blocked.status_code == 409

    spare = create_workflow()
    res = api_client.delete(f"/collections/workflows/{spare['id']}", headers=auth_headers)
    assert res.status_code == 204
    assert api_client.get(f"/collections/workflows/{spare['id']}", headers=auth_headers).status_code == 404
    listed = api_client.get("/collections/workflows", headers=auth_headers).json()
    assert spare["id"] not in {item["id"] for item in listed}


def test_inactive_workflow_cannot_start(api_client, auth_headers, create_workflow, issued_invoice):
    workflow = create_workflow(is_active=False)
    invoice = issued_invoice()
    res = api_client.post(
        "/collections/accounts",
        json={"account_id": invoice["account_id"], "workflow_id": workflow["id"]},
        headers=auth_headers,
    )
    assert res.status_code == 400
    active_only = api_client.get("/collections/workflows", params={"active_only": True}, headers=auth_headers)
    assert workflow["id"] not in {item["id"] for item in active_only.json()}


def test_workflow_effectiveness(api_client, auth_headers, create_workflow, start_collection):
    workflow = create_workflow()
    paid = start_collection(amount_pence=10000, workflow=workflow)
    start_collection(amount_pence=30000, workflow=workflow)
    api_client.post(
        f"/accounts/{paid['account_id']}/payments",
        json={"amount_pence": 10000, "method": "card"},
        headers=auth_headers,
    )

    res = api_client.get(f"/collections/workflows/{workflow['id']}/effectiveness", headers=auth_headers)
    assert res.status_code == 200, res.text
    stats = res.json()
    assert stats["total_accounts"] == 2
    assert stats["completed"] == 1
    assert stats["completion_rate"] == 50.0
    assert stats["starting_balance_pence"] == 40000
    assert stats["collected_pence"] == 10000
    assert stats["collection_rate"] == 25.0
