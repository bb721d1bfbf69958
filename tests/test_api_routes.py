"""Tests for the admin API in :mod:`discoverycrawler.api.routes`."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from discoverycrawler.api.app import create_app
from discoverycrawler.config import AppConfig
from discoverycrawler.errors import JobAlreadyRunningError
from discoverycrawler.models import CrawlerSource, HistoryOutcome, SourceType
from discoverycrawler.runtime import build_runtime

FEED = (
    '<?xml version="1.0"?><rss version="2.0"><channel>'
    "<item><title>One</title><link>https://blog.example.com/one</link></item>"
    "<item><title>Two</title><link>https://blog.example.com/two</link></item>"
    "</channel></rss>"
)


@pytest.fixture
def runtime(web, settings):
    web.add("https://blog.example.com/feed.xml", FEED, content_type="application/rss+xml")
    web.add("https://blog.example.com/one", "<html><body><h1>One</h1></body></html>")
    web.add("https://blog.example.com/two", "<html><body><h1>Two</h1></body></html>")
    seeded = CrawlerSource(name="Blog", type=SourceType.rss, url="https://blog.example.com/feed.xml")
    runtime = build_runtime(AppConfig(settings=settings, sources=[seeded]), blob_root=None, session=web, environ={})
    yield runtime
    runtime.scheduler.stop()


@pytest.fixture
def client(runtime) -> TestClient:
    return TestClient(create_app(runtime, autostart=False))


def _source_id(runtime) -> str:
    return runtime.sources.list()[0].id


def test_health_reports_scheduler_state(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "scheduler_running": False, "running_jobs": 0}


def test_source_crud(client) -> None:
    created = client.post(
        "/api/sources",
        json={"name": "Docs", "type": "sitemap", "url": "https://docs.example.com/sitemap.xml", "topics": ["docs"]},
    )
    assert created.status_code == 201
    body = created.json()
    assert body["domain"] == "docs.example.com"
    assert body["crawl_frequency_hours"] == 24
    assert body["enabled"] is True
    source_id = body["id"]

    assert client.get(f"/api/sources/{source_id}").json()["name"] == "Docs"
    assert len(client.get("/api/sources").json()) == 2

    updated = client.put(f"/api/sources/{source_id}", json={"enabled": False, "crawl_frequency_hours": 6})
    assert updated.status_code == 200
    assert updated.json()["enabled"] is False
    assert updated.json()["topics"] == ["docs"]
    assert [s["id"] for s in client.get("/api/sources", params={"enabled": False}).json()] == [source_id]

    assert client.delete(f"/api/sources/{source_id}").status_code == 204
    assert client.get(f"/api/sources/{source_id}").status_code == 404
    assert client.delete(f"/api/sources/{source_id}").status_code == 404


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "", "type": "rss", "url": "https://example.com/feed"},
        {"name": "Bad type", "type": "gopher", "url": "https://example.com/feed"},
        {"name": "Bad url", "type": "rss", "url": "ftp://example.com/feed"},
        {"name": "Too often", "type": "rss", "url": "https://example.com/feed", "crawl_frequency_hours": 0.5},
    ],
)
def test_invalid_sources_are_rejected(client, payload) -> None:
    assert client.post("/api/sources", json=payload).status_code == 422


def test_update_unknown_source_is_404(client) -> None:
    assert client.put("/api/sources/missing", json={"name": "X"}).status_code == 404


def test_manual_trigger_runs_a_job(client, runtime) -> None:
    source_id = _source_id(runtime)

    response = client.post(f"/api/crawl/{source_id}")
    assert response.status_code == 202
    job_id = response.json()["id"]
    assert response.json()["status"] == "pending"

    runtime.scheduler.wait_for(job_id, timeout=5)

    job = client.get(f"/api/jobs/{job_id}").json()
    assert job["status"] == "completed"
    assert job["items_found"] == 2
    assert job["items_submitted"] == 2

    listed = client.get("/api/jobs", params={"source_id": source_id, "status": "completed"}).json()
    assert [item["id"] for item in listed] == [job_id]

    history = client.get(f"/api/history/{source_id}", params={"limit": 1}).json()
    assert len(history) == 1
    assert history[0]["outcome"] == HistoryOutcome.submitted.value

    stats = client.get("/api/stats").json()
    assert stats["summary"]["items_submitted"] == 2
    assert stats["summary"]["success_rate"] == 1.0
    per_source = client.get(f"/api/stats/{source_id}").json()
    assert per_source["total_runs"] == 1
    assert per_source["submission_rate"] == 1.0


def test_trigger_errors(client, runtime) -> None:
    assert client.post("/api/crawl/missing").status_code == 404

    source_id = _source_id(runtime)
    with patch.object(runtime.scheduler, "trigger", side_effect=JobAlreadyRunningError(source_id)):
        response = client.post(f"/api/crawl/{source_id}")
    assert response.status_code == 409
    assert "already being crawled" in response.json()["detail"]


def test_query_limits_are_validated(client, runtime) -> None:
    source_id = _source_id(runtime)

    assert client.get("/api/jobs", params={"limit": 101}).status_code == 422
    assert client.get(f"/api/history/{source_id}", params={"limit": 0}).status_code == 422
    assert client.get(f"/api/history/{source_id}", params={"limit": 1000}).status_code == 200
    assert client.get("/api/history/missing").status_code == 404
    assert client.get("/api/jobs/missing").status_code == 404


def test_stats_for_source_that_never_ran(client, runtime) -> None:
    body = client.get(f"/api/stats/{_source_id(runtime)}").json()

    assert body["total_runs"] == 0
    assert body["success_rate"] == 0.0


def test_deleting_a_source_with_a_queued_job_cancels_it(client, runtime) -> None:
    source_id = _source_id(runtime)

    with patch.object(runtime.scheduler, "is_running", return_value=True), patch.object(
        runtime.executor, "request_cancellation"
    ) as cancel:
        response = client.delete(f"/api/sources/{source_id}")

    assert response.status_code == 204
    cancel.assert_called_once_with(source_id)


def test_deleting_an_idle_source_leaves_no_cancellation_behind(client, runtime) -> None:
    source_id = _source_id(runtime)
    runtime.stats.update(source_id, runtime.jobs.create(source_id))

    with patch.object(runtime.executor, "request_cancellation") as cancel:
        response = client.delete(f"/api/sources/{source_id}")

    assert response.status_code == 204
    cancel.assert_not_called()
    assert runtime.stats.all() == []
