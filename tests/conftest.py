"""Shared fakes for the job-record store and the external commands."""
import asyncio
import json
import uuid
from typing import Any

import pytest

from genbuilder.core.errors import RecordNotFoundError
from genbuilder.core.workflow import GenerationStage, JobStatus
from genbuilder.db.store import GENERATION_FIELDS, ITERATION_FIELDS, GenerationRecord
from genbuilder.workspace.commands import CommandResult


class FakeStore:
    """In-memory JobStore. ``fail_updates`` makes the next N generation updates miss."""

    def __init__(self):
        self.generations: dict[str, dict[str, Any]] = {}
        self.iterations: dict[str, dict[str, Any]] = {}
        self.updates: list[tuple[str, dict]] = []
        self.fail_updates = 0

    async def create_generation(self, prompt, job_id=None):
        job_id = job_id or str(uuid.uuid4())
        self.generations[job_id] = {
            "prompt": prompt,
            "status": JobStatus.PENDING,
            "current_stage": GenerationStage.PENDING,
            "current_detail": None,
            "title": None,
            "description": None,
            "error": None,
            "source_dir": None,
        }
        return GenerationRecord(id=job_id, **self.generations[job_id])

    async def get_generation(self, job_id):
        if job_id not in self.generations:
            return None
        return GenerationRecord(id=job_id, **self.generations[job_id])

    async def update_generation(self, job_id, fields):
        unknown = set(fields) - GENERATION_FIELDS
        if unknown:
            raise ValueError(f"Unknown fields: {sorted(unknown)}")
        self.updates.append((job_id, dict(fields)))
        if self.fail_updates:
            self.fail_updates -= 1
            raise RecordNotFoundError("GeneratedApp", job_id)
        if job_id not in self.generations:
            raise RecordNotFoundError("GeneratedApp", job_id)
        self.generations[job_id].update(fields)

    async def create_iteration(self, job_id, prompt, iteration_id=None):
        if job_id not in self.generations:
            raise RecordNotFoundError("GeneratedApp", job_id)
        iteration_id = iteration_id or str(uuid.uuid4())
        self.iterations[iteration_id] = {
            "generation_id": job_id, "prompt": prompt, "status": JobStatus.PENDING, "error": None,
        }
        return iteration_id

    async def update_iteration(self, iteration_id, fields):
        unknown = set(fields) - ITERATION_FIELDS
        if unknown:
            raise ValueError(f"Unknown fields: {sorted(unknown)}")
        if iteration_id not in self.iterations:
            raise RecordNotFoundError("AppIteration", iteration_id)
        self.iterations[iteration_id].update(fields)


class FakeCommands:
    """Stands in for ``run_command``; records every call, fails the configured ones.

    ``fail``, ``raise_on`` and ``slow`` match on argument prefixes, so
    ``["agent"]`` covers every agent invocation.
    """

    def __init__(self, fail=(), raise_on=(), slow=(), delay=0.0, fail_output="failed"):
        self.calls: list[tuple[tuple[str, ...], float]] = []
        self.fail = [tuple(args) for args in fail]
        self.raise_on = [tuple(args) for args in raise_on]
        self.slow = [tuple(args) for args in slow]
        self.delay = delay
        self.fail_output = fail_output

    @staticmethod
    def _matches(key, prefixes):
        return any(key[:len(prefix)] == prefix for prefix in prefixes)

    async def __call__(self, args, cwd, timeout, env=None):
        key = tuple(args)
        self.calls.append((key, timeout))
        if self._matches(key, self.slow):
            await asyncio.sleep(self.delay)
        if self._matches(key, self.raise_on):
            raise RuntimeError(f"{' '.join(args)} blew up")
        if self._matches(key, self.fail):
            return CommandResult(key, 1, self.fail_output)
        return CommandResult(key, 0, "")

    @property
    def commands(self) -> list[tuple[str, ...]]:
        return [args for args, _ in self.calls]


def assistant_line(*texts: str, tools=()) -> str:
    content = [{"type": "text", "text": t} for t in texts]
    content += [{"type": "tool_use", "name": name, "input": tool_input} for name, tool_input in tools]
    return json.dumps({"type": "assistant", "message": {"content": content}})


def result_line(text: str) -> str:
    return json.dumps({"type": "result", "result": text})


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def commands():
    return FakeCommands()
