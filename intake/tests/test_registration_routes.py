import json
import uuid
from urllib.parse import urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from intake.app.main import create_app
from intake.tests.fixtures.fakes import (
    FakeBroker,
    company_form,
    make_settings,
    resident_form,
)


class TurnstileStub:
    def __init__(self, success=True):
        self.success = success
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        return httpx.Response(200, json={"success": self.success})


@pytest.fixture
def broker():
    return FakeBroker(reply=b'{"status":"queued"}')


@pytest.fixture
def turnstile():
    return TurnstileStub()


@pytest.fixture
def client(broker, turnstile, tmp_path):
    app = create_app(
        settings=make_settings(upload_dir=str(tmp_path / "uploads")),
        broker=broker,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(turnstile)),
    )
    with TestClient(app) as test_client:
        yield test_client


def issue_upload_token(client) -> str:
    response = client.post("/upload-token", json={"turnstileToken": "widget-token"})
    assert response.status_code == 200
    return response.json()["data"]["uploadToken"]


# ---------------------------------------------------------------------------
# Health and client configuration
# ---------------------------------------------------------------------------

def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_client_config_values_are_strings(client):
    response = client.get("/config")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Configuration retrieved successfully",
        "data": {
            "maxGeneralFiles": "2",
            "maxPlateNumbers": "5",
            "concurrentUploads": "2",
        },
    }


def test_injected_broker_not_closed_on_shutdown(broker, turnstile, tmp_path):
    app = create_app(
        settings=make_settings(upload_dir=str(tmp_path)),
        broker=broker,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(turnstile)),
    )
    with TestClient(app):
        pass

    assert broker.closed is False


# ---------------------------------------------------------------------------
# Upload token exchange
# ---------------------------------------------------------------------------

def test_upload_token_issued_for_verified_captcha(client, turnstile):
    response = client.post("/upload-token", json={"turnstileToken": "widget-token"})

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["message"] == "Upload token generated successfully"
    assert body["data"]["expiresIn"] == 900
    assert body["data"]["uploadToken"].count(".") == 2
    assert turnstile.calls == 1


def test_upload_token_accepts_form_body(client):
    response = client.post("/upload-token", data={"turnstileToken": "widget-token"})

    assert response.status_code == 200


def test_repeated_exchange_uses_cached_verification(client, turnstile):
    issue_upload_token(client)
    issue_upload_token(client)

    assert turnstile.calls == 1


def test_upload_token_requires_captcha_token(client, turnstile):
    response = client.post("/upload-token", json={})

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "Turnstile token is required",
    }
    assert turnstile.calls == 0


def test_upload_token_rejected_captcha(client, turnstile):
    turnstile.success = False

    response = client.post("/upload-token", json={"turnstileToken": "widget-token"})

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid Turnstile token"


def test_upload_token_malformed_body(client):
    response = client.post(
        "/upload-token",
        content=b"{oops",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid request format"


# ---------------------------------------------------------------------------
# Presigned URLs
# ---------------------------------------------------------------------------

def test_presigned_upload_requires_token(client):
    response = client.get(
        "/presigned",
        params={"registerId": "r1", "fileType": "general", "fileName": "doc.pdf"},
    )

    assert response.status_code == 401
    assert response.json()["message"] == "Upload token is required"


def test_presigned_upload_then_download(client):
    token = issue_upload_token(client)

    upload = client.get(
        "/presigned",
        params={
            "registerId": "r1",
            "fileType": "plate",
            "fileName": "front.png",
            "plateNumber": "ABC123",
            "contentType": "image/png",
        },
        headers={"Authorization": f"Bearer {token}"},
    )
    assert upload.status_code == 200
    data = upload.json()["data"]
    assert data["key"] == "uploads/r1/plates/ABC123_front.png"

    download = client.get("/presigned/download", params={"key": data["key"]})
    assert download.status_code == 200
    download_data = download.json()["data"]
    assert download_data["key"] == data["key"]
    assert urlparse(download_data["downloadUrl"]).path == urlparse(data["url"]).path


def test_presigned_invalid_file_type(client):
    token = issue_upload_token(client)

    response = client.get(
        "/presigned",
        params={
            "registerId": "r1",
            "fileType": "other",
            "fileName": "doc.pdf",
            "uploadToken": token,
        },
    )

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "Invalid fileType",
        "errors": "fileType must be either 'plate' or 'general'",
    }


def test_presigned_download_requires_key(client):
    response = client.get("/presigned/download")

    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Registrations
# ---------------------------------------------------------------------------

def test_resident_register_returns_fresh_id(client, broker):
    first = client.post("/registers/resident", json=resident_form(register_id=None))
    second = client.post("/registers/resident", json=resident_form(register_id=None))

    assert first.status_code == 200
    first_id = first.json()["data"]["registerID"]
    uuid.UUID(first_id)
    assert first_id != second.json()["data"]["registerID"]
    assert broker.requests == []


def test_resident_register_validation_failure(client):
    response = client.post("/registers/resident", json={"residentName": "Ali"})

    body = response.json()
    assert response.status_code == 400
    assert body["message"] == "Validation failed"
    assert {"field": "contactEmail", "message": "This field is required"} in body["errors"]


def test_resident_register_bind_failure(client):
    response = client.post(
        "/registers/resident",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid input format"


def test_resident_finalize_relays_reply(client, broker):
    response = client.post("/registers/resident/finalize", json=resident_form())

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Resident registration finalized successfully",
        "data": {
            "residentName": "Aisyah Rahman",
            "natsResponse": {"status": "queued"},
        },
    }
    assert broker.requests[0].subject == "register.individual.SITE01"


def test_company_finalize_relays_text_reply(client, broker):
    broker.reply = b"OK"

    response = client.post("/registers/company/finalize", json=company_form())

    assert response.status_code == 200
    assert response.json()["data"] == {"id": "202001234567", "natsResponse": "OK"}
    assert len(json.loads(broker.requests[0].payload)["individuals"]) == 2


def test_company_finalize_broker_timeout(client, broker):
    broker.raise_timeout = True

    response = client.post("/registers/company/finalize", json=company_form())

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Failed to send NATS message"


def test_company_register_obtains_employer_id(client, broker):
    broker.reply = b'{"data": "EMP-0042"}'

    response = client.post("/registers/company", json=company_form(employerID=""))

    data = response.json()["data"]
    assert response.status_code == 200
    assert data["employerID"] == "EMP-0042"
    uuid.UUID(data["registerID"])
    assert broker.requests[0].subject == "register.employer.id.SITE01"


def test_company_register_invalid_employer_reply(client, broker):
    broker.reply = b'{"data": null}'

    response = client.post("/registers/company", json=company_form(employerID=""))

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "message": "Invalid response format",
        "errors": "Missing or invalid ID",
    }


def test_finalize_missing_site_code(broker, turnstile, tmp_path):
    app = create_app(
        settings=make_settings(site_code="", upload_dir=str(tmp_path)),
        broker=broker,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(turnstile)),
    )
    with TestClient(app) as client:
        response = client.post("/registers/resident/finalize", json=resident_form())

    assert response.status_code == 500
    assert response.json()["message"] == "Missing SITE_CODE environment variable"
    assert broker.requests == []
