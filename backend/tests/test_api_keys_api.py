"""End-to-end tests for admin key management, validation and metering."""
from __future__ import annotations

import base64
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from keygate.core.config import Settings, get_settings
from keygate.main import app

ADMIN = {"Authorization": "Basic " + base64.b64encode(b"admin:secret").decode()}


@pytest.fixture(name="client")
def client_fixture(tmp_path: Path) -> TestClient:
    app.dependency_overrides[get_settings] = lambda: Settings(
        api_key_store_path=str(tmp_path / "api_keys.jsonl"),
        auth_basic_username="admin",
        auth_basic_password_plain="secret",
        database_url=None,
    )
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.pop(get_settings, None)


def _issue(client: TestClient, **payload: object) -> dict:
    body = {"name": "ci", "permissions": ["read"], "usage_limit": 2, "rate_limit_window": "daily"}
    body.update(payload)
    resp = client.post("/api/admin/api-keys", json=body, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_admin_requires_basic_auth(client: TestClient) -> None:
    assert client.get("/api/admin/api-keys").status_code == 401
    bad = {"Authorization": "Basic " + base64.b64encode(b"admin:nope").decode()}
    assert client.get("/api/admin/api-keys", headers=bad).status_code == 401


def test_issue_and_list_keys(client: TestClient) -> None:
    issued = _issue(client, name="first", description="ci key")

    assert issued["api_key"].startswith("api_")
    assert len(issued["api_key"]) == len("api_") + 32
    assert issued["usage"] == 0
    assert issued["rate_limit_window"] == "daily"
    assert issued["rate_limit_reset_at"] is not None

    listed = client.get("/api/admin/api-keys", headers=ADMIN).json()
    assert [item["id"] for item in listed] == [issued["id"]]
    assert "api_key" not in listed[0]


def test_validate_api_key_endpoint(client: TestClient) -> None:
    issued = _issue(client, permissions=["read", "write"])

    ok = client.post("/api/validate-api-key", json={"apiKey": issued["api_key"]}).json()
    assert ok["isValid"] is True
    assert ok["keyDetails"]["permissions"] == ["read", "write"]
    assert ok["keyDetails"]["usage"] == 0

    bad_format = client.post("/api/validate-api-key", json={"apiKey": "sk_123"}).json()
    assert bad_format["isValid"] is False
    assert "must start with" in bad_format["message"].lower()

    unknown = client.post("/api/validate-api-key", json={"apiKey": "api_unknown"}).json()
    assert unknown == {"isValid": False, "message": "API key not found in our system", "keyDetails": None}

    assert client.post("/api/validate-api-key", json={}).status_code == 400


def test_usage_is_metered_then_limited(client: TestClient) -> None:
    key = _issue(client)["api_key"]

    first = client.post("/api/usage", headers={"X-API-Key": key})
    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert first.headers["X-RateLimit-Window"] == "daily"
    assert first.json()["rateLimitInfo"]["current"] == 1

    second = client.post("/api/usage", json={"apiKey": key, "incrementBy": 1})
    assert second.status_code == 200
    assert second.headers["X-RateLimit-Remaining"] == "0"

    third = client.post("/api/usage", headers={"Authorization": f"Bearer {key}"})
    assert third.status_code == 429
    assert third.headers["X-RateLimit-Remaining"] == "0"
    assert int(third.headers["Retry-After"]) > 0
    body = third.json()
    assert body["success"] is False
    assert body["error"] == "Rate limit exceeded"
    assert body["rateLimitInfo"]["retryAfter"] == int(third.headers["Retry-After"])


def test_increment_larger_than_remaining_is_rejected(client: TestClient) -> None:
    key = _issue(client, usage_limit=5)["api_key"]

    resp = client.post("/api/usage", json={"apiKey": key, "incrementBy": 6})

    assert resp.status_code == 429
    assert resp.json()["rateLimitInfo"]["remaining"] == 5


def test_usage_rejects_bad_credentials(client: TestClient) -> None:
    write_only = _issue(client, permissions=["write"])["api_key"]

    assert client.post("/api/usage").status_code == 400
    assert client.post("/api/usage", headers={"X-API-Key": "nope"}).status_code == 401
    unknown = client.post("/api/usage", headers={"X-API-Key": "api_unknown"})
    assert unknown.status_code == 401
    assert unknown.json() == {"success": False, "error": "Invalid API key"}
    forbidden = client.post("/api/usage", headers={"X-API-Key": write_only})
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "Insufficient permissions. Required: read"


def test_usage_analytics_and_delete(client: TestClient) -> None:
    busy = _issue(client, name="busy", usage_limit=10)
    idle = _issue(client, name="idle")
    for _ in range(3):
        client.post("/api/usage", headers={"X-API-Key": busy["api_key"]})

    analytics = client.get("/api/admin/api-keys/usage", headers=ADMIN).json()
    assert analytics["total_usage"] == 3
    assert analytics["total_keys"] == 2
    assert analytics["active_keys"] == 1
    assert [k["name"] for k in analytics["keys"]] == ["busy", "idle"]

    assert client.delete(f"/api/admin/api-keys/{idle['id']}", headers=ADMIN).json() == {"deleted": True}
    assert client.delete(f"/api/admin/api-keys/{idle['id']}", headers=ADMIN).status_code == 404
    gone = client.post("/api/usage", headers={"X-API-Key": idle["api_key"]})
    assert gone.status_code == 401


def test_fetch_and_update_single_key(client: TestClient) -> None:
    issued = _issue(client, name="before", description="old", permissions=["read"])
    url = f"/api/admin/api-keys/{issued['id']}"

    fetched = client.get(url, headers=ADMIN)
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "before"
    assert "api_key" not in fetched.json()

    updated = client.put(url, json={"name": "after", "permissions": ["read", "write"]}, headers=ADMIN)
    assert updated.status_code == 200
    body = updated.json()
    assert body["name"] == "after"
    assert body["description"] == ""
    assert body["permissions"] == ["read", "write"]
    assert body["usage"] == issued["usage"]

    assert client.get(url, headers=ADMIN).json()["permissions"] == ["read", "write"]
    validated = client.post("/api/validate-api-key", json={"apiKey": issued["api_key"]}).json()
    assert validated["keyDetails"]["name"] == "after"


def test_single_key_routes_reject_bad_requests(client: TestClient) -> None:
    issued = _issue(client)
    url = f"/api/admin/api-keys/{issued['id']}"

    assert client.get(url).status_code == 401
    missing_name = client.put(url, json={"description": "x"}, headers=ADMIN)
    assert missing_name.status_code == 400
    assert missing_name.json()["detail"] == "Name is required"
    assert client.get("/api/admin/api-keys/nope", headers=ADMIN).status_code == 404
    assert client.put("/api/admin/api-keys/nope", json={"name": "x"}, headers=ADMIN).status_code == 404
