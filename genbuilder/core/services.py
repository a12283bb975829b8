from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from genbuilder.core.config import settings
from genbuilder.core.engine import GenerationEngine
from genbuilder.core.logging import job_extra
from genbuilder.core.registry import JobRegistry
from genbuilder.core.runner import ProcessRunner
from genbuilder.db.store import JobStore, RetryingStore, SqlJobStore
from genbuilder.preview.manager import PreviewManager
from genbuilder.tasks.writer import BackgroundWriter
from genbuilder.workspace.preparer import WorkspacePreparer

log = logging.getLogger(__name__)

@dataclass
class BuilderServices:
    """Everything one service process shares: one registry, one writer, one preview."""
    store: JobStore
    writer: BackgroundWriter
    registry: JobRegistry
    preparer: WorkspacePreparer
    runner: ProcessRunner
    engine: GenerationEngine
    preview: PreviewManager

    @classmethod
    def build(cls, store: JobStore | None = None) -> "BuilderServices":
        store = store or SqlJobStore()
        writer = BackgroundWriter(settings.write_queue_size)
        registry = JobRegistry(settings.cancel_grace)
        preparer = WorkspacePreparer()
        runner = ProcessRunner(registry, preparer)
        engine = GenerationEngine(
            store, writer, registry, runner, preparer,
            retrying_store=RetryingStore(store, settings.store_retry_attempts, settings.store_retry_delay),
        )
        preview = PreviewManager(preparer)
        return cls(store, writer, registry, preparer, runner, engine, preview)

    async def start(self) -> None:
        self.writer.start()

    async def shutdown(self, grace: float | None = None) -> None:
        """Stop the preview, give running jobs ``grace`` seconds, then cancel the rest."""
        await self.preview.shutdown()
        pending = await self.engine.wait_idle(settings.shutdown_grace if grace is None else grace)
        if pending:
            log.warning("Cancelling %d job(s) still running at shutdown: %s", len(pending),
                        ", ".join(sorted(task.get_name() for task in pending)), extra=job_extra("-"))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        await self.writer.stop()
