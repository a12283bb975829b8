from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import Awaitable
from genbuilder.core.config import settings
from genbuilder.core.errors import JobAlreadyRunningError, WorkspaceNotFoundError
from genbuilder.core.logging import job_extra
from genbuilder.core.prompt import BusinessContext, build_cli_args, build_enriched_prompt
from genbuilder.core.registry import JobRegistry
from genbuilder.core.runner import ProcessRunner, RunOutcome
from genbuilder.core.tracker import StageTracker
from genbuilder.core.workflow import AppMetadata, JobStatus
from genbuilder.db.store import JobStore, RetryingStore
from genbuilder.tasks.writer import BackgroundWriter
from genbuilder.workspace.manager import WorkspaceManager
from genbuilder.workspace.preparer import InstallTask, WorkspacePreparer

log = logging.getLogger(__name__)

class GenerationEngine:
    """Entry points for generation and iteration jobs."""

    def __init__(
        self,
        store: JobStore,
        writer: BackgroundWriter,
        registry: JobRegistry,
        runner: ProcessRunner,
        preparer: WorkspacePreparer,
        retrying_store: RetryingStore | None = None,
        workspaces_dir: str | Path | None = None,
        playbook_dir: str | Path | None = None,
    ):
        self.store = store
        self.writer = writer
        self.registry = registry
        self.runner = runner
        self.preparer = preparer
        self.retrying_store = retrying_store or RetryingStore(
            store, settings.store_retry_attempts, settings.store_retry_delay
        )
        self.workspaces_dir = workspaces_dir or settings.workspaces_dir
        self.playbook_dir = playbook_dir or settings.playbook_dir
        self._tasks: set[asyncio.Task] = set()

    def _tracker(self, job_id: str) -> StageTracker:
        return StageTracker(
            job_id, self.store, self.writer,
            marker_tag=settings.stage_marker_tag,
            error_max_chars=settings.error_max_chars,
        )

    def _spawn(self, job_id: str, coro: Awaitable[RunOutcome]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._guard(job_id, coro), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, job_id: str, coro: Awaitable[RunOutcome]) -> RunOutcome | None:
        try:
            return await coro
        except Exception:
            log.exception("Job aborted before the agent finished", extra=job_extra(job_id))
            return None

    async def wait_idle(self, timeout: float | None = None) -> set[asyncio.Task]:
        """Wait for running jobs; returns the ones still running after ``timeout``."""
        if not self._tasks:
            return set()
        _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        return pending

    async def resolve_workspace(self, job_id: str) -> Path:
        record = await self.store.get_generation(job_id)
        if record is None:
            raise WorkspaceNotFoundError(f"Generation {job_id} not found")
        if not record.source_dir or not Path(record.source_dir).is_dir():
            raise WorkspaceNotFoundError(f"No workspace found for generation {job_id}")
        return Path(record.source_dir)

    # Generation

    def submit_generation(self, job_id: str, prompt: str, context: BusinessContext | None = None) -> asyncio.Task:
        if self.registry.is_active(job_id):
            raise JobAlreadyRunningError(f"Job {job_id} is already running")
        return self._spawn(job_id, self.start_generation(job_id, prompt, context))

    async def start_generation(self, job_id: str, prompt: str, context: BusinessContext | None = None) -> RunOutcome:
        self.registry.register(job_id)
        ws = WorkspaceManager(job_id, self.workspaces_dir, self.playbook_dir)
        install_task: InstallTask | None = None
        try:
            ws.bootstrap(settings.local_database_url, settings.preview_auth_secret)
            install_task = self.preparer.start_speculative_install(job_id, ws.root)
            # The record may have just been written by another service
            await self.retrying_store.update(job_id, {"status": JobStatus.GENERATING, "source_dir": str(ws.root)})
        except BaseException:
            self.registry.release(job_id)
            if install_task is not None:
                await install_task.discard()
            raise

        args = build_cli_args(build_enriched_prompt(prompt, context), settings.agent_model, use_continue=False)

        async def on_complete(meta: AppMetadata) -> None:
            log.info("Generation complete: %s", meta.title, extra=job_extra(job_id, "complete"))

        async def on_error(message: str) -> None:
            log.info("Generation failed: %s", message[:200], extra=job_extra(job_id, "failed"))

        try:
            return await self.runner.run(
                job_id, ws.root, args, self._tracker(job_id),
                on_complete=on_complete, on_error=on_error, install_task=install_task,
            )
        finally:
            # Only the success path consumes the install
            await install_task.discard()

    # Iteration

    async def submit_iteration(self, job_id: str, iteration_id: str, prompt: str) -> asyncio.Task:
        workspace = await self.resolve_workspace(job_id)
        if self.registry.is_active(job_id):
            raise JobAlreadyRunningError(f"Job {job_id} is already running")
        return self._spawn(job_id, self.start_iteration(job_id, iteration_id, prompt, workspace))

    async def start_iteration(
        self,
        job_id: str,
        iteration_id: str,
        prompt: str,
        workspace: Path | None = None,
    ) -> RunOutcome:
        if workspace is None:
            workspace = await self.resolve_workspace(job_id)
        self.registry.register(job_id)
        try:
            await self.store.update_iteration(iteration_id, {"status": JobStatus.GENERATING})
            await self.store.update_generation(job_id, {"status": JobStatus.GENERATING, "error": None})
        except BaseException:
            self.registry.release(job_id)
            raise

        async def on_complete(meta: AppMetadata) -> None:
            await self.store.update_iteration(iteration_id, {"status": JobStatus.COMPLETE})

        async def on_error(message: str) -> None:
            await self.store.update_iteration(iteration_id, {"status": JobStatus.FAILED, "error": message})

        args = build_cli_args(prompt, settings.agent_model, use_continue=True)
        return await self.runner.run(
            job_id, workspace, args, self._tracker(job_id),
            on_complete=on_complete, on_error=on_error,
        )

    # Cancellation

    def cancel_generation(self, job_id: str) -> bool:
        return self.registry.cancel(job_id)
