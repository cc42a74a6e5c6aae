"""Tests for the jobs API."""

import time

import pytest
from fastapi.testclient import TestClient

from app.main import app


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _wait_for(client, job_id, status, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/jobs/{job_id}").json()
        if body["status"] == status:
            return body
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} never reached {status}")


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_dry_run_job_completes(client):
    response = client.post("/jobs", json={"topics": ["Mars rover"], "dry_run": True})

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert job_id.startswith("job_")

    body = _wait_for(client, job_id, "completed")
    assert body["progress_pct"] == 100
    assert body["meta"]["dryRun"] is True
    assert job_id in [j["job_id"] for j in client.get("/jobs").json()]


def test_topic_hint_is_accepted(client):
    response = client.post("/jobs", json={"preferred_topic_hint": "Deep sea vents", "dry_run": True})
    assert response.status_code == 202
    assert response.json()["topic"] == "Deep sea vents"


def test_job_without_topics_is_rejected(client):
    response = client.post("/jobs", json={"topics": ["  "], "dry_run": True})
    assert response.status_code == 422


def test_unknown_job_is_404(client):
    assert client.get("/jobs/job_missing").status_code == 404
    assert client.delete("/jobs/job_missing").status_code == 404


def test_cancel_after_completion_keeps_status(client):
    job_id = client.post("/jobs", json={"topics": ["Mars rover"], "dry_run": True}).json()["job_id"]
    _wait_for(client, job_id, "completed")

    body = client.delete(f"/jobs/{job_id}").json()

    assert body["status"] == "completed"
