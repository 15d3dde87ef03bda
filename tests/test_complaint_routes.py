"""Complaint relay endpoints through the FastAPI app."""
import json
import os
import re

import pytest

from services.errors import UpstreamError

VALID = {
    "name": "Asha Verma",
    "email": "asha@example.com",
    "category": "Water",
    "description": "Pipe burst near the market",
    "location": "Sector 17, Chandigarh",
}

ANONYMOUS = {
    "reference_id": "TEST-REF-456",
    "reporter_name": "Tester",
    "reporter_email": "tester@example.com",
    "category": "Roads & Infrastructure",
    "description": "Pothole",
    "location": "12.34,56.78",
    "location_lat": 12.34,
    "location_lng": 56.78,
}


def read_audit(audit_dir):
    files = os.listdir(audit_dir)
    assert len(files) == 1
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}\.log", files[0])
    with open(os.path.join(audit_dir, files[0]), encoding="utf-8") as f:
        return [json.loads(line) for line in f]


def test_water_complaint_notifies_department_and_acknowledges(client, email_service, audit_dir):
    resp = client.post("/api/send-complaint", json=VALID)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert re.fullmatch(r"CE-\d+", body["trackingId"])
    assert body["message"] == "Complaint emailed and acknowledgement sent"

    assert [m["to"] for m in email_service.sent] == ["smartcity.chd@nic.in"]
    assert email_service.sent[0]["subject"].endswith("New Civic Complaint: Water")
    assert email_service.acks[0]["to"] == "asha@example.com"
    assert email_service.acks[0]["reference_id"] == body["trackingId"]

    audit = read_audit(audit_dir)
    assert audit[0]["email"] == "as*@example.com"
    assert audit[0]["trackingId"] == body["trackingId"]


def test_roads_routes_to_roads_mailbox(client, email_service):
    resp = client.post("/api/send-complaint", json=dict(VALID, category="Roads"))
    assert resp.status_code == 200
    assert email_service.sent[0]["to"] == "xenr1mccchd@nic.in"


def test_other_category_falls_back_to_cc_mailbox(client, email_service, monkeypatch):
    monkeypatch.setenv("CC_EMAIL", "cc@chd.nic.in")
    resp = client.post("/api/send-complaint", json=dict(VALID, category="Other"))
    assert resp.status_code == 200
    assert email_service.sent[0]["to"] == "cc@chd.nic.in"
    assert email_service.sent[0]["cc"] == "cc@chd.nic.in"


def test_other_category_default_mailbox(client, email_service):
    client.post("/api/send-complaint", json=dict(VALID, category="Other"))
    assert email_service.sent[0]["to"] == "comm-mcc-chd@nic.in"


def test_missing_description_sends_nothing(client, email_service):
    payload = dict(VALID)
    del payload["description"]
    resp = client.post("/api/send-complaint", json=payload)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Missing required fields"
    assert email_service.sent == [] and email_service.acks == []


@pytest.mark.parametrize("field,value,message", [
    ("email", "not-an-email", "Invalid email"),
    ("category", "Parks", "Invalid category"),
    ("location", "", "Missing required fields"),
])
def test_invalid_fields(client, email_service, field, value, message):
    resp = client.post("/api/send-complaint", json=dict(VALID, **{field: value}))
    assert resp.status_code == 400
    assert resp.json()["message"] == message
    assert email_service.sent == []


def test_fields_are_html_escaped(client, email_service):
    payload = dict(VALID, description="<script>alert(1)</script>", imageUrl="https://x.test/a.jpg")
    client.post("/api/send-complaint", json=payload)
    html = email_service.sent[0]["html"]
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert 'href="https://x.test/a.jpg"' in html


def test_department_failure_does_not_block_acknowledgement(client, email_service):
    email_service.failing.add("smartcity.chd@nic.in")
    resp = client.post("/api/send-complaint", json=VALID)
    assert resp.status_code == 200
    body = resp.json()
    assert body["departmentNotified"] is False
    assert body["acknowledgementSent"] is True
    assert len(email_service.acks) == 1


def test_nothing_delivered_is_500(client, email_service, audit_dir):
    email_service.failing.add("*")
    resp = client.post("/api/send-complaint", json=VALID)
    assert resp.status_code == 500
    assert resp.json()["message"] == "Failed to send complaint email"
    assert not os.path.exists(audit_dir)


def test_complaint_endpoint_is_rate_limited(client):
    for _ in range(20):
        assert client.post("/api/send-complaint", json={}).status_code == 400
    assert client.post("/api/send-complaint", json={}).status_code == 429


def test_anonymous_complaint_inserts_then_notifies(client, email_service, supabase_service, audit_dir):
    resp = client.post("/api/complaints/anonymous", json=ANONYMOUS)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["message"] == "Anonymous complaint recorded"
    assert body["reference_id"] == "TEST-REF-456"
    assert body["inserted"]["id"] == 1

    record = supabase_service.inserted[0]
    assert record["complaint_id"] == "TEST-REF-456"
    assert record["title"] == "Complaint - Roads & Infrastructure"
    assert record["status"] == "Submitted"
    assert record["created_by"] == "anonymous"
    assert record["department_email"] == "comm-mcc-chd@nic.in"
    assert record["google_maps_link"] == "https://www.google.com/maps?q=12.34,56.78"

    assert email_service.sent[0]["to"] == "comm-mcc-chd@nic.in"
    assert email_service.acks[0]["location_link"] == record["google_maps_link"]
    assert read_audit(audit_dir)[0]["reporter_email"] == "te*@example.com"


def test_anonymous_uses_supplied_department(client, email_service):
    client.post("/api/complaints/anonymous", json=dict(ANONYMOUS, department_email="xenr1mccchd@nic.in"))
    assert email_service.sent[0]["to"] == "xenr1mccchd@nic.in"


@pytest.mark.parametrize("payload", [
    {k: v for k, v in ANONYMOUS.items() if k != "reference_id"},
    {k: v for k, v in ANONYMOUS.items() if k != "category"},
    dict(ANONYMOUS, reporter_email="nope"),
    {k: v for k, v in ANONYMOUS.items() if k != "reporter_email"},
])
def test_anonymous_validation(client, supabase_service, payload):
    resp = client.post("/api/complaints/anonymous", json=payload)
    assert resp.status_code == 400
    assert supabase_service.inserted == []


def test_anonymous_insert_failure_aborts_before_mail(client, email_service, supabase_service):
    supabase_service.insert_error = UpstreamError("Failed to insert complaint")
    resp = client.post("/api/complaints/anonymous", json=ANONYMOUS)
    assert resp.status_code == 500
    assert resp.json()["message"] == "Failed to insert complaint"
    assert email_service.sent == [] and email_service.acks == []


def test_anonymous_mail_failures_are_best_effort(client, email_service):
    email_service.failing.add("*")
    resp = client.post("/api/complaints/anonymous", json=ANONYMOUS)
    assert resp.status_code == 200


def test_anonymous_endpoint_is_rate_limited(client):
    for _ in range(20):
        assert client.post("/api/complaints/anonymous", json={}).status_code == 400
    assert client.post("/api/complaints/anonymous", json={}).status_code == 429


def test_wrong_field_type_is_400(client, email_service):
    resp = client.post("/api/send-complaint", json=dict(VALID, description=7))
    assert resp.status_code == 400
    assert resp.json() == {"message": "Invalid value for description"}
    assert email_service.sent == []


def test_complaint_without_body_is_400(client):
    resp = client.post("/api/send-complaint")
    assert resp.status_code == 400
    assert resp.json() == {"message": "Request body is required"}


@pytest.mark.parametrize("department", ["not-an-address", "a@b", "  "])
def test_anonymous_bad_department_email_falls_back(client, email_service, supabase_service, department):
    client.post("/api/complaints/anonymous", json=dict(ANONYMOUS, department_email=department))
    assert supabase_service.inserted[0]["department_email"] == "comm-mcc-chd@nic.in"
    assert email_service.sent[0]["to"] == "comm-mcc-chd@nic.in"
