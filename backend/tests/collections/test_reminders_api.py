from __future__ import annotations


def _send(api_client, auth_headers, account_id: int, channel: str = "email", reminder_type: str = "past_due_gentle"):
    return api_client.post(
        "/collections/reminders",
        json={
            "account_id": account_id,
            "reminder_type": reminder_type,
            "channel": channel,
            "subject": "Your orthodontic account",
        },
        headers=auth_headers,
    )


def test_send_reminder_records_recipient_and_age(api_client, auth_headers, issued_invoice):
    invoice = issued_invoice(amount_pence=12000, days_overdue=45)
    res = _send(api_client, auth_headers, invoice["account_id"])
    assert res.status_code == 201, res.text
    reminder = res.json()
    assert reminder["sent_to"] == invoice["patient"]["email"]
    assert reminder["days_overdue"] == 60
    assert reminder["payment_received"] is False


def test_reminder_needs_contact_details(api_client, auth_headers, create_patient, issued_invoice):
    patient = create_patient(email=None, phone=None)
    invoice = issued_invoice(patient=patient)

    no_email = _send(api_client, auth_headers, invoice["account_id"], channel="email")
    assert no_email.status_code == 400
    assert no_email.json()["code"] == "NO_EMAIL"

    no_phone = _send(api_client, auth_headers, invoice["account_id"], channel="sms")
    assert no_phone.status_code == 400
    assert no_phone.json()["code"] == "NO_PHONE"

    letter = _send(api_client, auth_headers, invoice["account_id"], channel="letter")
    assert letter.status_code == 201, letter.text


def test_unknown_account(api_client, auth_headers):
    res = _send(api_client, auth_headers, 999999)
    assert res.status_code == 404
    assert res.json()["code"] == "ACCOUNT_NOT_FOUND"


def test_reminder_logs_collection_activity_and_payment_attribution(api_client, auth_headers, start_collection):
    collection = start_collection(amount_pence=15000)
    sent = _send(api_client, auth_headers, collection["account_id"], channel="sms", reminder_type="past_due_firm")
    assert sent.status_code == 201, sent.text

    detail = api_client.get(f"/collections/accounts/{collection['id']}", headers=auth_headers).json()
    assert detail["activities"][0]["activity_type"] == "sms_sent"
    assert detail["activities"][0]["channel"] == "sms"

    api_client.post(
        f"/accounts/{collection['account_id']}/payments",
        json={"amount_pence": 5000, "method": "card"},
        headers=auth_headers,
    )
    listed = api_client.get(
        "/collections/reminders", params={"account_id": collection["account_id"]}, headers=auth_headers
    )
    assert listed.status_code == 200, listed.text
    page = listed.json()
    assert page["total"] == 1
    assert page["items"][0]["payment_received"] is True
    assert page["stats"]["with_payment"] >= 1


def test_batch_skips_unreachable_accounts(api_client, auth_headers, create_patient, issued_invoice):
    threshold = 95_000_000
    issued_invoice(amount_pence=threshold, days_overdue=70)
    issued_invoice(amount_pence=threshold, days_overdue=70, patient=create_patient(email=None))
    issued_invoice(amount_pence=threshold, days_overdue=5)

    res = api_client.post(
        "/collections/reminders/batch",
        json={
            "reminder_type": "past_due_urgent",
            "channel": "email",
            "min_balance_pence": threshold,
            "min_days_overdue": 60,
        },
        headers=auth_headers,
    )
    assert res.status_code == 200, res.text
    assert res.json() == {"sent": 1, "skipped": 2}

    audit = api_client.get(
        "/audit", params={"action": "payment_reminder.batch_sent"}, headers=auth_headers
    ).json()
    assert audit and audit[0]["entity_id"] == "batch"
