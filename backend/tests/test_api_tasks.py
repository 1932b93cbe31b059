from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from workqueue.core.config import Settings
from workqueue.main import create_app
from workqueue.services.task_queue_service import TaskQueueService


@pytest_asyncio.fixture
async def client(store, bus, settings):
    app = create_app(TaskQueueService(store, bus, settings=settings))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _enqueue(client, **body):
    payload = {"type": "email:send", "payload": {"to": "a@example.com"}}
    payload.update(body)
    response = await client.post("/tasks", json=payload)
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["ok"] is True
    return body["data"]


@pytest.mark.asyncio
async def test_enqueue_and_fetch_task(client) -> None:
    body = await _enqueue(client, priority=10, idempotency_key="api-1")
    again = await _enqueue(client, idempotency_key="api-1")

    assert body["created"] is True
    assert again["created"] is False
    assert again["task"]["id"] == body["task"]["id"]

    response = await client.get(f"/tasks/{body['task']['id']}")
    assert response.status_code == 200
    task = response.json()["data"]
    assert task["status"] == "PENDING"
    assert task["priority"] == 10
    assert task["created_by"] == "api"
    assert "x-request-id" in response.headers


@pytest.mark.asyncio
async def test_actor_header_is_recorded(client) -> None:
    response = await client.post(
        "/tasks",
        json={"type": "data:sync", "payload": {}},
        headers={"x-actor": "billing-service"},
    )

    assert response.json()["data"]["task"]["created_by"] == "billing-service"


@pytest.mark.asyncio
async def test_invalid_body_returns_validation_envelope(client) -> None:
    response = await client.post("/tasks", json={"type": "email:send", "payload": {}, "bogus": 1})

    assert response.status_code == 422
    body = response.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_unknown_task_returns_404_envelope(client) -> None:
    response = await client.get("/tasks/12345")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "task_not_found"


@pytest.mark.asyncio
async def test_cancel_and_retry_flow(client) -> None:
    task_id = (await _enqueue(client))["task"]["id"]

    cancelled = await client.post(f"/tasks/{task_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "CANCELLED"

    conflict = await client.post(f"/tasks/{task_id}/cancel")
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "invalid_state_transition"

    retried = await client.post(f"/tasks/{task_id}/retry", json={"reset_attempts": True})
    assert retried.status_code == 202
    assert retried.json()["data"]["status"] == "PENDING"

    again = await client.post(f"/tasks/{task_id}/retry")
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_listing_and_stats(client) -> None:
    await _enqueue(client)
    await _enqueue(client, type="data:sync")

    listed = await client.get("/tasks", params={"status": "PENDING", "type": "data:sync"})
    stats = await client.get("/tasks/stats")

    assert listed.status_code == 200
    assert [item["type"] for item in listed.json()["data"]["items"]] == ["data:sync"]
    assert stats.json()["data"]["pending"] == 2
    assert stats.json()["data"]["total"] == 2


@pytest.mark.asyncio
async def test_recover_and_cleanup_endpoints(client, store) -> None:
    await _enqueue(client)
    await store.acquire_next_task("gone", -5)

    recovered = await client.post("/tasks/recover/stale")
    cleaned = await client.post("/tasks/cleanup", params={"older_than_days": 0})

    assert recovered.json()["data"] == {"status": "ok", "recovered": 1}
    assert cleaned.json()["data"] == {"status": "ok", "deleted": 0}


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_http_enqueue_uses_configured_default_max_attempts(store, bus) -> None:
    service = TaskQueueService(store, bus, settings=Settings(job_default_max_attempts=7))
    transport = httpx.ASGITransport(app=create_app(service))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        defaulted = await http.post("/tasks", json={"type": "data:sync", "payload": {}})
        explicit = await http.post("/tasks", json={"type": "data:sync", "payload": {}, "max_attempts": 2})

    assert defaulted.status_code == 201
    assert defaulted.json()["data"]["task"]["max_attempts"] == 7
    assert explicit.json()["data"]["task"]["max_attempts"] == 2
