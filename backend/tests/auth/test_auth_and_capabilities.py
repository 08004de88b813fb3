from __future__ import annotations

import uuid

from app.models.user import Role
from app.services.capabilities import ALL_CODES, ROLE_CAPABILITIES


def test_login_rejects_bad_password(api_client, admin_credentials):
    email, _ = admin_credentials
    res = api_client.post("/auth/login", json={"email": email, "password": "not-the-password"})
    assert res.status_code == 401


def test_login_is_rate_limited(api_client):
    email = f"nobody-{uuid.uuid4().hex[:6]}@ortho.example.com"
    statuses = [
        api_client.post("/auth/login", json={"email": email, "password": "wrong"}).status_code
        for _ in range(11)
    ]
    assert statuses[:10] == [401] * 10
    assert statuses[10] == 429


def test_me_lists_clinic_and_capabilities(api_client, auth_headers, admin_credentials):
    res = api_client.get("/me", headers=auth_headers)
    assert res.status_code == 200, res.text
    payload = res.json()
    assert payload["email"] == admin_credentials[0]
    assert payload["role"] == "superadmin"
    assert payload["clinic_slug"] == "main"
    assert set(ALL_CODES).issubset(payload["capabilities"])


def test_capabilities_seeded(api_client, auth_headers):
    res = api_client.get("/capabilities", headers=auth_headers)
    assert res.status_code == 200, res.text
    codes = {item["code"] for item in res.json()}
    assert set(ALL_CODES).issubset(codes)


def test_new_user_gets_role_default_capabilities(api_client, auth_headers):
    email = f"billing-{uuid.uuid4().hex[:8]}@ortho.example.com"
    created = api_client.post(
        "/users",
        json={"email": email, "full_name": "Billing Clerk", "role": "billing", "temp_password": "ChangeMe12345!"},
        headers=auth_headers,
    )
    assert created.status_code == 201, created.text
    assert created.json()["must_change_password"] is True

    caps = api_client.get(f"/users/{created.json()['id']}/capabilities", headers=auth_headers)
    assert caps.status_code == 200, caps.text
    assert {item["code"] for item in caps.json()} == set(ROLE_CAPABILITIES[Role.billing])


def test_duplicate_user_email_conflicts(api_client, auth_headers, admin_credentials):
    res = api_client.post(
        "/users",
        json={
            "email": admin_credentials[0],
            "full_name": "Duplicate",
            "role": "front_desk",
            "temp_password": "ChangeMe12345!",
        },
        headers=auth_headers,
    )
    assert res.status_code == 409


def test_assistant_cannot_view_billing(api_client, login_as):
    headers = login_as("assistant")
    assert api_client.get("/patients", headers=headers).status_code == 200
    denied = api_client.get("/invoices", headers=headers)
    assert denied.status_code == 403
    assert denied.json()["detail"] == "Missing capability: billing.view"


def test_orthodontist_cannot_approve_write_offs(api_client, login_as):
    headers = login_as("orthodontist")
    assert api_client.get("/collections/write-offs", headers=headers).status_code == 200
    res = api_client.post("/collections/write-offs/1/approve", json={}, headers=headers)
    assert res.status_code == 403


def test_capability_guard_denies_when_removed(api_client, auth_headers):
    email = f"caps-guard-{uuid.uuid4().hex[:8]}@ortho.example.com"
    password = "ChangeMe12345!"
    created = api_client.post(
        "/users",
        json={"email": email, "full_name": "Cap Guard", "role": "office_manager", "temp_password": password},
        headers=auth_headers,
    )
    assert created.status_code == 201, created.text
    user_id = created.json()["id"]

    update_res = api_client.put(
        f"/users/{user_id}/capabilities",
        json={"capability_codes": ["patients.view"]},
        headers=auth_headers,
    )
    assert update_res.status_code == 200, update_res.text
    assert [item["code"] for item in update_res.json()] == ["patients.view"]

    token = api_client.post("/auth/login", json={"email": email, "password": password}).json()["access_token"]
    headers = {"Authorization": f"Bearer {token}"}
    assert api_client.get("/patients", headers=headers).status_code == 200
    assert api_client.get("/collections/accounts", headers=headers).status_code == 403


def test_unknown_capability_code_rejected(api_client, auth_headers):
    me = api_client.get("/me", headers=auth_headers).json()
    res = api_client.put(
        f"/users/{me['id']}/capabilities",
        json={"capability_codes": ["not.a.capability"]},
        headers=auth_headers,
    )
    assert res.status_code == 400


def test_password_reset_round_trip(api_client, auth_headers):
    email = f"reset-{uuid.uuid4().hex[:8]}@ortho.example.com"
    created = api_client.post(
        "/users",
        json={"email": email, "full_name": "Reset Me", "role": "front_desk", "temp_password": "ChangeMe12345!"},
        headers=auth_headers,
    )
    assert created.status_code == 201, created.text

    requested = api_client.post("/auth/password-reset/request", json={"email": email})
    assert requested.status_code == 200, requested.text
    token = requested.json()["reset_token"]
    assert token

    confirmed = api_client.post(
        "/auth/password-reset/confirm", json={"token": token, "new_password": "BrandNewPass123!"}
    )
    assert confirmed.status_code == 200, confirmed.text

    login = api_client.post("/auth/login", json={"email": email, "password": "BrandNewPass123!"})
    assert login.status_code == 200, login.text

    reused = api_client.post(
        "/auth/password-reset/confirm", json={"token": token, "new_password": "AnotherPass123!"}
    )
    assert reused.status_code == 400


def test_password_reset_for_unknown_email_reveals_nothing(api_client):
    res = api_client.post(
        "/auth/password-reset/request", json={"email": f"ghost-{uuid.uuid4().hex[:6]}@ortho.example.com"}
    )
    assert res.status_code == 200
    assert res.json()["reset_token"] is None
