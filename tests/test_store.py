"""Tests for the SQLAlchemy job store and the retrying wrapper."""
import asyncio

import pytest
from sqlalchemy.orm import sessionmaker

from genbuilder.core.errors import RecordNotFoundError
from genbuilder.core.workflow import GenerationStage, JobStatus
from genbuilder.db import models  # noqa: F401
from genbuilder.db.session import Base, make_engine
from genbuilder.db.store import RetryingStore, SqlJobStore

from conftest import FakeStore


@pytest.fixture
def sql_store(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    Base.metadata.create_all(engine)
    yield SqlJobStore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))
    engine.dispose()


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_retry_gives_up_after_five_attempts():
    store = FakeStore()
    sleep = RecordingSleep()
    retrying = RetryingStore(store, max_attempts=5, delay=1.0, sleep=sleep)

    with pytest.raises(RecordNotFoundError):
        asyncio.run(retrying.update("missing", {"status": JobStatus.GENERATING}))

    assert len(store.updates) == 5
    assert sum(sleep.delays) == pytest.approx(5.0)


def test_retry_succeeds_once_record_is_visible():
    store = FakeStore()
    asyncio.run(store.create_generation("prompt", job_id="job-1"))
    store.fail_updates = 4
    sleep = RecordingSleep()
    retrying = RetryingStore(store, max_attempts=5, delay=1.0, sleep=sleep)

    asyncio.run(retrying.update("job-1", {"status": JobStatus.GENERATING, "source_dir": "/data/apps/job-1"}))

    assert len(store.updates) == 5
    assert sum(sleep.delays) == pytest.approx(4.0)
    assert store.generations["job-1"]["source_dir"] == "/data/apps/job-1"


def test_retry_does_not_swallow_other_errors():
    store = FakeStore()
    asyncio.run(store.create_generation("prompt", job_id="job-1"))
    sleep = RecordingSleep()
    retrying = RetryingStore(store, sleep=sleep)

    with pytest.raises(ValueError):
        asyncio.run(retrying.update("job-1", {"not_a_field": 1}))
    assert sleep.delays == []


def test_retry_requires_an_attempt():
    with pytest.raises(ValueError):
        RetryingStore(FakeStore(), max_attempts=0)


def test_sql_store_generation_lifecycle(sql_store):
    async def scenario():
        created = await sql_store.create_generation("Build a CRM", job_id="job-1")
        await sql_store.update_generation("job-1", {
            "status": JobStatus.GENERATING,
            "current_stage": GenerationStage.CODING,
            "current_detail": "Creating src/app/page.tsx",
        })
        return created, await sql_store.get_generation("job-1")

    created, fetched = asyncio.run(scenario())
    assert created.status == JobStatus.PENDING
    assert created.current_stage == GenerationStage.PENDING
    assert fetched.prompt == "Build a CRM"
    assert fetched.status == JobStatus.GENERATING
    assert fetched.current_stage == GenerationStage.CODING
    assert fetched.current_detail == "Creating src/app/page.tsx"


def test_sql_store_missing_records(sql_store):
    assert asyncio.run(sql_store.get_generation("nope")) is None
    with pytest.raises(RecordNotFoundError):
        asyncio.run(sql_store.update_generation("nope", {"status": JobStatus.FAILED}))
    with pytest.raises(RecordNotFoundError):
        asyncio.run(sql_store.create_iteration("nope", "change it"))
    with pytest.raises(ValueError):
        asyncio.run(sql_store.update_generation("nope", {"prompt": "rewrite history"}))


def test_sql_store_iterations(sql_store):
    async def scenario():
        await sql_store.create_generation("Build a CRM", job_id="job-1")
        iteration_id = await sql_store.create_iteration("job-1", "Add a calendar")
        await sql_store.update_iteration(iteration_id, {"status": JobStatus.FAILED, "error": "boom"})
        return iteration_id

    iteration_id = asyncio.run(scenario())
    with sql_store.session_factory() as db:
        row = db.get(models.AppIteration, iteration_id)
        assert row.generation_id == "job-1"
        assert row.status == JobStatus.FAILED
        assert row.error == "boom"
