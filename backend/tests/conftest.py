from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-for-jwt")
os.environ.setdefault("ADMIN_EMAIL", "owner@ortho.example.com")
os.environ.setdefault("ADMIN_PASSWORD", "OrthoAdmin123!")
os.environ.setdefault("PORTAL_DEBUG_TOKENS", "true")
os.environ.setdefault("RESET_TOKEN_DEBUG", "true")

import uuid
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app.core.clock import today
from app.db.session import SessionLocal
from app.main import app
from app.routers import auth as auth_router


@pytest.fixture(scope="session")
def admin_credentials():
    return os.environ["ADMIN_EMAIL"], os.environ["ADMIN_PASSWORD"]


@pytest.fixture(scope="session")
def api_client():
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    for limiter in (
        auth_router.LOGIN_LIMITER,
        auth_router.LOGIN_IP_LIMITER,
        auth_router.RESET_REQUEST_LIMITER,
        auth_router.RESET_CONFIRM_LIMITER,
    ):
        limiter.reset()
    yield


@pytest.fixture(scope="session")
def auth_headers(api_client, admin_credentials):
    email, password = admin_credentials
    response = api_client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    token = response.json().get("access_token")
    assert token, "Missing access_token in login response"
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def db_session(api_client):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def login_as(api_client, auth_headers):
    """Create a clinic user with the given role and return their auth headers."""

    def _login_as(role: str, password: str = "StaffPassword123!") -> dict:
        email = f"{role}-{uuid.uuid4().hex[:8]}@ortho.example.com"
        created = api_client.post(
            "/users",
            json={"email": email, "full_name": f"{role} user", "role": role, "temp_password": password},
            headers=auth_headers,
        )
        assert created.status_code == 201, created.text
        res = api_client.post("/auth/login", json={"email": email, "password": password})
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['access_token']}"}

    return _login_as


@pytest.fixture()
def create_patient(api_client, auth_headers):
    def _create_patient(**overrides) -> dict:
        suffix = uuid.uuid4().hex[:8]
        payload = {
            "first_name": "Test",
            "last_name": f"Patient{suffix}",
            "email": f"patient-{suffix}@example.com",
            "phone": "07700900123",
        }
        payload.update(overrides)
        res = api_client.post("/patients", json=payload, headers=auth_headers)
        assert res.status_code == 201, res.text
        return res.json()

    return _create_patient


@pytest.fixture()
def issued_invoice(api_client, auth_headers, create_patient):
    """Issue an invoice for a new patient that fell due ``days_overdue`` days ago."""

    def _issued_invoice(amount_pence: int = 50000, days_overdue: int = 45, patient: dict | None = None) -> dict:
        patient = patient or create_patient()
        due = today() - timedelta(days=days_overdue)
        created = api_client.post(
            "/invoices",
            json={
                "patient_id": patient["id"],
                "lines": [
                    {
                        "description": "Orthodontic treatment instalment",
                        "quantity": 1,
                        "unit_price_pence": amount_pence,
                    }
                ],
            },
            headers=auth_headers,
        )
        assert created.status_code == 201, created.text
        invoice = created.json()
        issued = api_client.post(
            f"/invoices/{invoice['id']}/issue",
            json={"issue_date": (due - timedelta(days=30)).isoformat(), "due_date": due.isoformat()},
            headers=auth_headers,
        )
        assert issued.status_code == 200, issued.text
        return {**issued.json(), "patient": patient}

    return _issued_invoice


@pytest.fixture()
def create_workflow(api_client, auth_headers):
    def _create_workflow(**overrides) -> dict:
        payload = {
            "name": f"Workflow {uuid.uuid4().hex[:6]}",
            "trigger_days": 30,
            "min_balance_pence": 0,
            "stages": [
                {"stage_number": 1, "name": "Friendly reminder", "escalate_after_days": 10},
                {"stage_number": 2, "name": "Firm reminder", "escalate_after_days": 14},
                {"stage_number": 3, "name": "Final notice"},
            ],
        }
        payload.update(overrides)
        res = api_client.post("/collections/workflows", json=payload, headers=auth_headers)
        assert res.status_code == 201, res.text
        return res.json()

    return _create_workflow


@pytest.fixture()
def start_collection(api_client, auth_headers, issued_invoice, create_workflow):
    def _start_collection(amount_pence: int = 50000, days_overdue: int = 45, workflow: dict | None = None) -> dict:
        workflow = workflow or create_workflow()
        invoice = issued_invoice(amount_pence=amount_pence, days_overdue=days_overdue)
        res = api_client.post(
            "/collections/accounts",
            json={"account_id": invoice["account_id"], "workflow_id": workflow["id"]},
            headers=auth_headers,
        )
        assert res.status_code == 201, res.text
        return {**res.json(), "invoice": invoice, "workflow": workflow}

    return _start_collection
