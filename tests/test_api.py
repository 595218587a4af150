from __future__ import annotations

import json
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from conftest import RecordingRunner
from pagesnap import main as app_main
from pagesnap.auth import AuthContext, create_api_key, get_auth_context, get_store
from pagesnap.errors import NavigationError
from pagesnap.jobs import JobManager
from pagesnap.settings import Settings
from pagesnap.storage import ObjectStorage
from pagesnap.store import Store, StoreConfig
from pagesnap.url_safety import UrlSafetyValidator


class Caller:
    def __init__(self, owner_id: str = "owner-1") -> None:
        self.owner_id = owner_id

    def __call__(self) -> AuthContext:
        return AuthContext(api_key_id=1, api_key_name="tests", api_key_prefix="psnp_test000", owner_id=self.owner_id)


@pytest.fixture
def manager(capture_settings: Settings) -> JobManager:
    return JobManager(
        store=Store(StoreConfig(db_path=capture_settings.storage.db_path)),
        storage=ObjectStorage(replace(capture_settings.cloud, enabled=False)),
        validator=UrlSafetyValidator(),
        runner=RecordingRunner(),
        settings=capture_settings,
    )


@pytest.fixture
def caller() -> Caller:
    return Caller()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, manager: JobManager, caller: Caller):
    monkeypatch.setattr(app_main, "JOB_MANAGER", manager)
    app_main.app.dependency_overrides[get_auth_context] = caller
    yield TestClient(app_main.app)
    app_main.app.dependency_overrides.clear()


def _create(client: TestClient, url: str = "https://example.com", **options) -> dict:
    response = client.post("/capture/url", json={"url": url, "options": options})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_create_job_returns_pending_job(client: TestClient) -> None:
    response = client.post("/capture/url", json={"url": "https://example.com", "options": {"fullPage": True}})

    body = response.json()
    assert response.status_code == 201
    assert body["success"] is True
    assert body["data"]["status"] == "pending"
    assert body["data"]["owner_id"] == "owner-1"
    assert body["data"]["options"]["full_page"] is True
    assert "timestamp" in body


def test_unsafe_url_is_a_400(client: TestClient) -> None:
    response = client.post("/capture/url", json={"url": "http://192.168.0.10/admin"})

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"] == {
        "message": "Internal network addresses are not allowed",
        "code": "UNSAFE_URL",
    }


@pytest.mark.parametrize(
    "payload",
    [
        {"url": "https://example.com", "options": {"width": 10}},
        {"url": "https://example.com", "options": {"preset": "nope"}},
        {"url": "https://example.com", "options": {"unknown": 1}},
        {"options": {}},
    ],
)
def test_invalid_payload_is_a_400(client: TestClient, payload: dict) -> None:
    response = client.post("/capture/url", json=payload)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_process_job_then_reprocess_conflicts(client: TestClient) -> None:
    job = _create(client, format="jpg")

    first = client.post(f"/capture/jobs/{job['id']}/process")
    second = client.post(f"/capture/jobs/{job['id']}/process")

    assert first.status_code == 200
    data = first.json()["data"]
    assert data["success"] is True
    assert data["artifact"]["file_name"].endswith(".jpg")
    assert data["artifact"]["local_url"].startswith("/uploads/")
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "JOB_NOT_PENDING"


def test_failed_capture_is_reported(client: TestClient, manager: JobManager) -> None:
    manager._runner = RecordingRunner(error=NavigationError.timeout())
    job = _create(client)

    response = client.post(f"/capture/jobs/{job['id']}/process")

    assert response.status_code == 422
    assert response.json()["error"] == {"message": "Page loading timeout exceeded", "code": "CAPTURE_FAILED"}
    fetched = client.get(f"/capture/jobs/{job['id']}").json()["data"]
    assert fetched["status"] == "failed"
    assert fetched["error_message"] == "Page loading timeout exceeded"


def test_job_lookup_errors(client: TestClient, caller: Caller) -> None:
    job = _create(client)

    missing = client.get("/capture/jobs/does-not-exist")
    caller.owner_id = "owner-2"
    foreign = client.get(f"/capture/jobs/{job['id']}")

    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "JOB_NOT_FOUND"
    assert foreign.status_code == 403
    assert foreign.json()["error"]["code"] == "ACCESS_DENIED"


def test_list_jobs_with_status_filter(client: TestClient) -> None:
    first = _create(client, url="https://example.com/1")
    _create(client, url="https://example.com/2")
    _create(client, url="https://example.com/3")
    client.post(f"/capture/jobs/{first['id']}/process")

    pending = client.get("/capture/jobs", params={"status": "pending", "limit": 1}).json()["data"]
    completed = client.get("/capture/jobs", params={"status": "completed"}).json()["data"]
    bad = client.get("/capture/jobs", params={"status": "exploded"})

    assert pending["total_count"] == 2
    assert pending["total_pages"] == 2
    assert pending["has_next_page"] is True
    assert len(pending["jobs"]) == 1
    assert [job["id"] for job in completed["jobs"]] == [first["id"]]
    assert bad.status_code == 400


def test_delete_job(client: TestClient) -> None:
    job = _create(client)
    client.post(f"/capture/jobs/{job['id']}/process")

    deleted = client.delete(f"/capture/jobs/{job['id']}")
    after = client.get(f"/capture/jobs/{job['id']}")

    assert deleted.status_code == 200
    assert deleted.json()["data"] == {"job_id": job["id"]}
    assert after.status_code == 404


def test_job_events_stream_backlog_for_finished_job(client: TestClient) -> None:
    job = _create(client)
    client.post(f"/capture/jobs/{job['id']}/process")

    response = client.get(f"/capture/jobs/{job['id']}/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    events = [json.loads(line) for line in response.text.splitlines() if line]
    assert [event["status"] for event in events] == ["pending", "processing", "completed"]
    assert [event["sequence"] for event in events] == [0, 1, 2]


def test_usage_analytics(client: TestClient) -> None:
    job = _create(client)
    client.post(f"/capture/jobs/{job['id']}/process")

    everything = client.get("/capture/analytics").json()["data"]
    ancient = client.get("/capture/analytics", params={"end_date": "2001-01-01"}).json()["data"]
    bad = client.get("/capture/analytics", params={"start_date": "yesterday"})

    assert everything["total_count"] == 1
    assert everything["counts_by_type"] == {"url_capture": 1}
    assert ancient["total_count"] == 0
    assert bad.status_code == 400


def test_public_presets(client: TestClient) -> None:
    body = client.get("/public/presets").json()

    assert body["data"]["total"] == 26
    assert body["data"]["presets"]["desktop"]["desktop-fhd"]["width"] == 1920


def test_public_capture_returns_screenshot_details(client: TestClient, manager: JobManager) -> None:
    response = client.post(
        "/public/capture",
        json={"url": "https://example.com", "options": {"preset": "youtube-thumbnail", "format": "webp"}},
    )

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["screenshot"]["format"] == "webp"
    assert body["screenshot"]["dimensions"] == {"width": 1280, "height": 720}
    assert body["screenshot"]["url"].startswith("http://testserver/uploads/screenshot_")
    assert body["preset"]["name"] == "youtube-thumbnail"
    assert (client.get("/capture/jobs").json()["data"]["total_count"]) == 0


def test_public_capture_rejects_unsafe_url(client: TestClient) -> None:
    response = client.post("/public/capture", json={"url": "http://localhost:5432"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "UNSAFE_URL"


def test_public_status_and_health(client: TestClient) -> None:
    status = client.get("/public/status").json()["data"]
    health = client.get("/health").json()

    assert status["service"] == "pagesnap"
    assert status["status"] == "running"
    assert health == {"status": "ok", "browser_connected": False, "cloud_storage": False}


def test_missing_api_key_is_rejected(monkeypatch: pytest.MonkeyPatch, manager: JobManager) -> None:
    monkeypatch.setattr(app_main, "JOB_MANAGER", manager)
    client = TestClient(app_main.app)

    missing = client.get("/capture/jobs")
    malformed = client.get("/capture/jobs", headers={"X-API-Key": "psnp_short"})
    unknown = client.get("/capture/jobs", headers={"X-API-Key": "psnp_" + "0" * 32})

    assert missing.status_code == 401
    assert missing.headers["www-authenticate"] == "ApiKey"
    assert missing.json()["error"]["code"] == "UNAUTHORIZED"
    assert malformed.json()["error"]["message"] == "Invalid API key format"
    assert unknown.json()["error"]["message"] == "Invalid or revoked API key"


def test_api_key_owner_scopes_jobs(monkeypatch: pytest.MonkeyPatch, manager: JobManager) -> None:
    monkeypatch.setattr(app_main, "JOB_MANAGER", manager)
    client = TestClient(app_main.app)
    with get_store().session() as session:
        plain_key, _ = create_api_key(session, "ci", owner="team-9")

    response = client.post(
        "/capture/url",
        json={"url": "https://example.com"},
        headers={"X-API-Key": plain_key},
    )

    assert response.status_code == 201
    assert response.json()["data"]["owner_id"] == "team-9"
