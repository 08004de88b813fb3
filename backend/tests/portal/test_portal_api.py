from __future__ import annotations

import pytest

PASSWORD = "PortalPass123!"


def _magic_session(api_client, email: str) -> dict:
    link = api_client.post("/portal/auth/magic-link", json={"email": email, "clinic_slug": "main"})
    assert link.status_code == 200, link.text
    token = link.json()["token"]
    assert token
    verified = api_client.post("/portal/auth/magic-link/verify", json={"token": token})
    assert verified.status_code == 200, verified.text
    return verified.json()


def _register(api_client, email: str, password: str = PASSWORD):
    return api_client.post(
        "/portal/auth/register", json={"email": email, "password": password, "clinic_slug": "main"}
    )


def _login(api_client, email: str, password: str = PASSWORD):
    return api_client.post(
        "/portal/auth/login", json={"email": email, "password": password, "clinic_slug": "main"}
    )


@pytest.fixture()
def portal_patient(create_patient):
    return create_patient()


@pytest.fixture()
def verified_patient(api_client, portal_patient):
    registered = _register(api_client, portal_patient["email"])
    assert registered.status_code == 201, registered.text
    confirmed = api_client.post("/portal/auth/verify-email", json={"token": registered.json()["token"]})
    assert confirmed.status_code == 200, confirmed.text
    return portal_patient


def _bearer(session: dict) -> dict:
    return {"Authorization": f"Bearer {session['session_token']}"}


def test_magic_link_signs_in(api_client, portal_patient):
    session = _magic_session(api_client, portal_patient["email"])
    assert session["account"]["patient_id"] == portal_patient["id"]
    assert session["account"]["status"] == "active"
    assert session["account"]["email_verified"] is True

    me = api_client.get("/portal/me", headers=_bearer(session))
    assert me.status_code == 200, me.text
    assert me.json()["clinic_name"]
    assert me.json()["phone"] == portal_patient["phone"]


def test_magic_link_token_is_single_use(api_client, portal_patient):
    token = api_client.post(
        "/portal/auth/magic-link", json={"email": portal_patient["email"], "clinic_slug": "main"}
    ).json()["token"]
    assert api_client.post("/portal/auth/magic-link/verify", json={"token": token}).status_code == 200
    again = api_client.post("/portal/auth/magic-link/verify", json={"token": token})
    assert again.status_code == 400
    assert again.json()["code"] == "INVALID_TOKEN"


def test_magic_link_for_unknown_email_reveals_nothing(api_client):
    res = api_client.post(
        "/portal/auth/magic-link", json={"email": "nobody@example.com", "clinic_slug": "main"}
    )
    assert res.status_code == 200
    assert res.json()["token"] is None


def test_magic_link_unknown_clinic(api_client, portal_patient):
    res = api_client.post(
        "/portal/auth/magic-link", json={"email": portal_patient["email"], "clinic_slug": "nowhere"}
    )
    assert res.status_code == 404
    assert res.json()["code"] == "CLINIC_NOT_FOUND"


def test_profile_update_is_audited(api_client, auth_headers, portal_patient):
    session = _magic_session(api_client, portal_patient["email"])
    res = api_client.patch(
        "/portal/profile",
        json={"phone": "07700900999", "city": "Leeds"},
        headers=_bearer(session),
    )
    assert res.status_code == 200, res.text
    assert res.json()["phone"] == "07700900999"
    assert res.json()["city"] == "Leeds"

    staff_view = api_client.get(f"/patients/{portal_patient['id']}", headers=auth_headers).json()
    assert staff_view["phone"] == "07700900999"

    audit = api_client.get(f"/audit/patients/{portal_patient['id']}", headers=auth_headers).json()
    assert audit[0]["action"] == "patient.portal_profile_updated"
    assert audit[0]["actor"] is None
    assert audit[0]["after_json"] == {"phone": "07700900999", "city": "Leeds"}


def test_portal_account_shows_balance_and_promises(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=27000, days_overdue=40)
    patient = collection["invoice"]["patient"]
    api_client.post(
        f"/collections/accounts/{collection['id']}/promises",
        json={"promised_amount_pence": 9000, "promised_date": "2099-01-01"},
        headers=auth_headers,
    )
    session = _magic_session(api_client, patient["email"])

    res = api_client.get("/portal/account", headers=_bearer(session))
    assert res.status_code == 200, res.text
    billing = res.json()
    assert billing["current_balance_pence"] == 27000
    assert billing["aging"]["31_60"] == 27000
    assert [invoice["balance_pence"] for invoice in billing["open_invoices"]] == [27000]
    assert [promise["promised_amount_pence"] for promise in billing["pending_promises"]] == [9000]


def test_portal_account_without_invoices(api_client, portal_patient):
    session = _magic_session(api_client, portal_patient["email"])
    billing = api_client.get("/portal/account", headers=_bearer(session)).json()
    assert billing["current_balance_pence"] == 0
    assert billing["open_invoices"] == []


def test_register_then_verify_then_login(api_client, portal_patient):
    registered = _register(api_client, portal_patient["email"])
    assert registered.status_code == 201, registered.text

    duplicate = _register(api_client, portal_patient["email"])
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "ACCOUNT_EXISTS"

    early = _login(api_client, portal_patient["email"])
    assert early.status_code == 403
    assert early.json()["code"] == "EMAIL_NOT_VERIFIED"

    verified = api_client.post("/portal/auth/verify-email", json={"token": registered.json()["token"]})
    assert verified.status_code == 200, verified.text
    assert verified.json()["status"] == "active"

    res = _login(api_client, portal_patient["email"])
    assert res.status_code == 200, res.text
    assert res.json()["session_token"]


def test_register_needs_patient_record(api_client):
    res = _register(api_client, "stranger@example.com")
    assert res.status_code == 404
    assert res.json()["code"] == "PATIENT_NOT_FOUND"


def test_register_rejects_short_password(api_client, portal_patient):
    assert _register(api_client, portal_patient["email"], password="short").status_code == 422


def test_lockout_after_repeated_failures(api_client, verified_patient):
    for _ in range(5):
        res = _login(api_client, verified_patient["email"], password="WrongPassword1")
        assert res.status_code == 401
        assert res.json()["code"] == "INVALID_CREDENTIALS"

    locked = _login(api_client, verified_patient["email"])
    assert locked.status_code == 423
    assert locked.json()["code"] == "ACCOUNT_LOCKED"


def test_staff_deactivation_blocks_portal(api_client, auth_headers, verified_patient):
    session = _login(api_client, verified_patient["email"]).json()

    res = api_client.post(f"/patients/{verified_patient['id']}/portal/deactivate", headers=auth_headers)
    assert res.status_code == 200, res.text
    assert res.json()["status"] == "deactivated"

    assert api_client.get("/portal/me", headers=_bearer(session)).status_code == 401
    blocked = _login(api_client, verified_patient["email"])
    assert blocked.status_code == 403
    assert blocked.json()["code"] == "ACCOUNT_DEACTIVATED"

    restored = api_client.post(f"/patients/{verified_patient['id']}/portal/reactivate", headers=auth_headers)
    assert restored.json()["status"] == "active"
    assert _login(api_client, verified_patient["email"]).status_code == 200

    audit = api_client.get(
        "/audit", params={"action": "portal_account.deactivated"}, headers=auth_headers
    ).json()
    assert audit[0]["after_json"]["status"] == "deactivated"


def test_deactivate_without_portal_account(api_client, auth_headers, portal_patient):
    res = api_client.post(f"/patients/{portal_patient['id']}/portal/deactivate", headers=auth_headers)
    assert res.status_code == 404
    assert res.json()["code"] == "PORTAL_ACCOUNT_NOT_FOUND"


def test_portal_access_needs_capability(api_client, login_as, verified_patient):
    headers = login_as("assistant")
    res = api_client.post(f"/patients/{verified_patient['id']}/portal/deactivate", headers=headers)
    assert res.status_code == 403


def test_logout_revokes_session(api_client, verified_patient):
    session = _login(api_client, verified_patient["email"]).json()
    out = api_client.post("/portal/auth/logout", headers=_bearer(session))
    assert out.status_code == 200, out.text
    assert api_client.get("/portal/me", headers=_bearer(session)).status_code == 401


def test_password_reset_revokes_sessions(api_client, verified_patient):
    session = _login(api_client, verified_patient["email"]).json()
    requested = api_client.post(
        "/portal/auth/password-reset/request",
        json={"email": verified_patient["email"], "clinic_slug": "main"},
    )
    assert requested.status_code == 200
    token = requested.json()["token"]

    confirmed = api_client.post(
        "/portal/auth/password-reset/confirm", json={"token": token, "new_password": "BrandNewPass456"}
    )
    assert confirmed.status_code == 200, confirmed.text
    assert api_client.get("/portal/me", headers=_bearer(session)).status_code == 401
    assert _login(api_client, verified_patient["email"]).status_code == 401
    assert _login(api_client, verified_patient["email"], password="BrandNewPass456").status_code == 200

    reused = api_client.post(
        "/portal/auth/password-reset/confirm", json={"token": token, "new_password": "AnotherPass789"}
    )
    assert reused.status_code == 400


def test_portal_rejects_staff_token(api_client, auth_headers):
    assert api_client.get("/portal/me", headers=auth_headers).status_code == 401
