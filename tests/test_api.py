# tests/test_api.py

from __future__ import annotations

import uuid

import httpx
import pytest
import pytest_asyncio

from taskflow_api.config import Settings
from taskflow_api.main import create_app
from taskflow_api.models import TaskStatus
from taskflow_api.queue_manager import JobOptions, JobQueue
from taskflow_api.task_service import TaskService


@pytest_asyncio.fixture()
async def client(store, queue: JobQueue):
    app = create_app(Settings(), service=TaskService(store, queue, JobOptions(initial_delay=0)))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _create(client: httpx.AsyncClient, name: str = "Report", description: str = "Build the weekly report"):
    resp = await client.post("/tasks", json={"name": name, "description": description})
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_create_task_returns_pending_record(client: httpx.AsyncClient, queue: JobQueue) -> None:
    body = await _create(client, name="  Report  ")

    uuid.UUID(body["id"])
    assert body["name"] == "Report"
    assert body["status"] == "pending"
    assert body["progress"] == 0
    assert body["retries"] == 0
    assert body["createdAt"] == body["updatedAt"]
    assert "result" not in body
    assert "error" not in body

    delivery = await queue.dequeue("c1", timeout=1.0)
    assert delivery.job.task_id == body["id"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"name": "Report"},
        {"description": "Build the weekly report"},
        {"name": "   ", "description": "Build the weekly report"},
        {"name": "Report", "description": ""},
    ],
)
async def test_create_task_rejects_invalid_input(client: httpx.AsyncClient, store, payload: dict) -> None:
    resp = await client.post("/tasks", json=payload)

    assert resp.status_code == 400
    body = resp.json()
    assert body["status"] == 400
    assert body["error"]
    assert body["details"]
    assert await store.count() == 0


@pytest.mark.asyncio
async def test_get_task_by_id(client: httpx.AsyncClient) -> None:
    created = await _create(client)

    first = await client.get(f"/tasks/{created['id']}")
    second = await client.get(f"/tasks/{created['id']}")

    assert first.status_code == 200
    assert first.json() == created
    assert second.json() == first.json()


@pytest.mark.asyncio
@pytest.mark.parametrize("task_id", [str(uuid.uuid4()), "not-a-uuid"])
async def test_get_unknown_task_is_404(client: httpx.AsyncClient, task_id: str) -> None:
    resp = await client.get(f"/tasks/{task_id}")

    assert resp.status_code == 404
    assert resp.json() == {"error": "Task not found", "status": 404}


@pytest.mark.asyncio
async def test_list_tasks_newest_first(client: httpx.AsyncClient) -> None:
    names = [(await _create(client, name=f"task-{i}"))["name"] for i in range(3)]

    resp = await client.get("/tasks")

    assert resp.status_code == 200
    assert [t["name"] for t in resp.json()] == list(reversed(names))


@pytest.mark.asyncio
async def test_list_tasks_filtered_by_status(client: httpx.AsyncClient, store) -> None:
    done = await _create(client, name="done")
    await _create(client, name="waiting")
    await store.update_status(done["id"], TaskStatus.PROCESSING, 10, attempt=1)
    await store.update_status(done["id"], TaskStatus.COMPLETED, 100, result={"ok": True}, attempt=1)

    completed = (await client.get("/tasks", params={"status": "completed"})).json()
    pending = (await client.get("/tasks", params={"status": "pending"})).json()

    assert [t["name"] for t in completed] == ["done"]
    assert completed[0]["result"] == {"ok": True}
    assert completed[0]["progress"] == 100
    assert [t["name"] for t in pending] == ["waiting"]

    bad = await client.get("/tasks", params={"status": "sleeping"})
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_health(client: httpx.AsyncClient) -> None:
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert "timestamp" in resp.json()
