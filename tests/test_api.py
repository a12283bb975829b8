"""HTTP surface tests with the FastAPI TestClient and an in-memory store."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from genbuilder.core.prompt import BusinessContext
from genbuilder.core.services import BuilderServices
from genbuilder.core.workflow import JobStatus
from genbuilder.main import create_app

from conftest import FakeStore


@pytest.fixture
def services():
    services = BuilderServices.build(store=FakeStore())
    services.engine.submit_generation = MagicMock()
    services.engine.submit_iteration = AsyncMock()
    services.preview.start_in_background = MagicMock()
    return services


@pytest.fixture
def client(services):
    with TestClient(create_app(services, migrate=False)) as client:
        yield client


def _seed(services, job_id, source_dir=None):
    asyncio.run(services.store.create_generation("Build a CRM", job_id=job_id))
    if source_dir is not None:
        services.store.generations[job_id]["source_dir"] = str(source_dir)


def test_health(client):
    resp = client.get("/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "active_jobs": 0, "preview": None}


def test_create_generation(client, services):
    resp = client.post("/v1/generations", json={
        "generation_id": "job-1",
        "prompt": "Build a CRM",
        "business_context": {"company_name": "Acme", "use_cases": ["sales"]},
    })

    assert resp.status_code == 202
    body = resp.json()
    assert body["id"] == "job-1"
    assert body["status"] == "pending"
    assert body["message"] == "Preparing to build your app..."
    services.engine.submit_generation.assert_called_once_with(
        "job-1", "Build a CRM", BusinessContext(company_name="Acme", use_cases=["sales"]),
    )


def test_create_generation_reuses_existing_record(client, services):
    _seed(services, "job-1")
    resp = client.post("/v1/generations", json={"generation_id": "job-1", "prompt": "Build a CRM"})
    assert resp.status_code == 202
    assert list(services.store.generations) == ["job-1"]
    services.engine.submit_generation.assert_called_once_with("job-1", "Build a CRM", None)


def test_create_generation_requires_prompt(client):
    assert client.post("/v1/generations", json={"prompt": ""}).status_code == 422


def test_get_generation(client, services):
    assert client.get("/v1/generations/nope").status_code == 404

    _seed(services, "job-1")
    services.store.generations["job-1"]["status"] = JobStatus.GENERATING
    resp = client.get("/v1/generations/job-1")
    assert resp.status_code == 200
    assert resp.json()["status"] == "generating"
    assert resp.json()["current_stage"] == "pending"


def test_iteration_needs_a_workspace(client, services):
    assert client.post("/v1/generations/nope/iterations", json={"prompt": "more"}).status_code == 404

    _seed(services, "job-1")
    assert client.post("/v1/generations/job-1/iterations", json={"prompt": "more"}).status_code == 404
    services.engine.submit_iteration.assert_not_awaited()


def test_iteration_accepted(client, services, tmp_path):
    _seed(services, "job-1", tmp_path)
    resp = client.post("/v1/generations/job-1/iterations", json={"iteration_id": "it-1", "prompt": "Add invoices"})

    assert resp.status_code == 202
    assert resp.json() == {"id": "it-1", "generation_id": "job-1", "status": "pending"}
    assert services.store.iterations["it-1"]["prompt"] == "Add invoices"
    services.engine.submit_iteration.assert_awaited_once_with("job-1", "it-1", "Add invoices")


def test_iteration_conflicts_with_running_job(client, services, tmp_path):
    _seed(services, "job-1", tmp_path)
    services.registry.register("job-1")
    resp = client.post("/v1/generations/job-1/iterations", json={"prompt": "Add invoices"})
    assert resp.status_code == 409
    assert services.store.iterations == {}


def test_cancel_unknown_job(client):
    assert client.post("/v1/generations/nope/cancel").status_code == 404


def test_preview_routes(client, services, tmp_path):
    assert client.get("/v1/generations/job-1/preview").status_code == 404
    assert client.post("/v1/generations/job-1/preview").status_code == 404

    _seed(services, "job-1", tmp_path)
    resp = client.post("/v1/generations/job-1/preview")
    assert resp.status_code == 202
    assert resp.json() == {"status": "deploying"}
    services.preview.start_in_background.assert_called_once_with("job-1", tmp_path)

    assert client.delete("/v1/generations/job-1/preview").status_code == 204
