"""Access to the job-record store.

The record for a generation is created by whoever accepted the request, which
may be a different writer than this service. Until that write has replicated,
updates here can fail with :class:`RecordNotFoundError`; :class:`RetryingStore`
absorbs that window for the first write of a job.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from genbuilder.core.errors import RecordNotFoundError, TransientPersistenceError
from genbuilder.core.logging import job_extra
from genbuilder.core.workflow import GenerationStage, JobStatus
from genbuilder.db.models import AppIteration, GeneratedApp

log = logging.getLogger(__name__)

GENERATION_FIELDS = frozenset({
    "status", "current_stage", "current_detail", "title", "description", "error", "source_dir",
})
ITERATION_FIELDS = frozenset({"status", "error"})


@dataclass(frozen=True)
class GenerationRecord:
    id: str
    prompt: str
    status: JobStatus
    current_stage: GenerationStage
    current_detail: str | None = None
    title: str | None = None
    description: str | None = None
    error: str | None = None
    source_dir: str | None = None

    @classmethod
    def from_model(cls, row: GeneratedApp) -> "GenerationRecord":
        return cls(
            id=row.id,
            prompt=row.prompt,
            status=JobStatus(row.status),
            current_stage=GenerationStage(row.current_stage),
            current_detail=row.current_detail,
            title=row.title,
            description=row.description,
            error=row.error,
            source_dir=row.source_dir,
        )


class JobStore(Protocol):
    async def create_generation(self, prompt: str, job_id: str | None = None) -> GenerationRecord: ...
    async def get_generation(self, job_id: str) -> GenerationRecord | None: ...
    async def update_generation(self, job_id: str, fields: dict[str, Any]) -> None: ...
    async def create_iteration(self, job_id: str, prompt: str, iteration_id: str | None = None) -> str: ...
    async def update_iteration(self, iteration_id: str, fields: dict[str, Any]) -> None: ...


def _check_fields(fields: dict[str, Any], allowed: frozenset) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)}")


class SqlJobStore:
    """JobStore backed by SQLAlchemy; session work runs in a worker thread."""

    def __init__(self, session_factory: sessionmaker | None = None):
        if session_factory is None:
            from genbuilder.db.session import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    async def _run(self, fn: Callable[[Session], Any]) -> Any:
        def work():
            with self.session_factory() as db:
                return fn(db)
        return await asyncio.to_thread(work)

    async def create_generation(self, prompt: str, job_id: str | None = None) -> GenerationRecord:
        def work(db: Session) -> GenerationRecord:
            row = GeneratedApp(prompt=prompt)
            if job_id:
                row.id = job_id
            db.add(row)
            db.commit()
            db.refresh(row)
            return GenerationRecord.from_model(row)
        return await self._run(work)

    async def get_generation(self, job_id: str) -> GenerationRecord | None:
        def work(db: Session) -> GenerationRecord | None:
            row = db.get(GeneratedApp, job_id)
            return GenerationRecord.from_model(row) if row else None
        return await self._run(work)

    async def update_generation(self, job_id: str, fields: dict[str, Any]) -> None:
        _check_fields(fields, GENERATION_FIELDS)

        def work(db: Session) -> None:
            row = db.get(GeneratedApp, job_id)
            if row is None:
                raise RecordNotFoundError("GeneratedApp", job_id)
            for key, value in fields.items():
                setattr(row, key, value)
            db.commit()
        await self._run(work)

    async def create_iteration(self, job_id: str, prompt: str, iteration_id: str | None = None) -> str:
        def work(db: Session) -> str:
            if db.get(GeneratedApp, job_id) is None:
                raise RecordNotFoundError("GeneratedApp", job_id)
            row = AppIteration(generation_id=job_id, prompt=prompt)
            if iteration_id:
                row.id = iteration_id
            db.add(row)
            db.commit()
            return row.id
        return await self._run(work)

    async def update_iteration(self, iteration_id: str, fields: dict[str, Any]) -> None:
        _check_fields(fields, ITERATION_FIELDS)

        def work(db: Session) -> None:
            row = db.get(AppIteration, iteration_id)
            if row is None:
                raise RecordNotFoundError("AppIteration", iteration_id)
            for key, value in fields.items():
                setattr(row, key, value)
            db.commit()
        await self._run(work)


class RetryingStore:
    """Retries generation updates that fail while the record is still replicating."""

    def __init__(
        self,
        store: JobStore,
        max_attempts: int = 5,
        delay: float = 1.0,
        retry_on: tuple[type[BaseException], ...] = (TransientPersistenceError, SQLAlchemyError),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.max_attempts = max_attempts
        self.delay = delay
        self.retry_on = retry_on
        self.sleep = sleep

    async def update(self, job_id: str, fields: dict[str, Any]) -> None:
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.store.update_generation(job_id, fields)
                return
            except self.retry_on as e:
                last_error = e
                log.info("Record not visible yet, waiting %ss (attempt %d/%d): %s",
                         self.delay, attempt, self.max_attempts, e,
                         extra=job_extra(job_id))
            # Every failed attempt waits out one delay, the last one included
            await self.sleep(self.delay)

        log.error("Update failed after %d attempts: %s", self.max_attempts, last_error,
                  extra=job_extra(job_id))
        raise last_error
