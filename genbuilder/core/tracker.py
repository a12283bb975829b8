from __future__ import annotations
import functools
import logging
from genbuilder.core.buffers import truncate
from genbuilder.core.events import AssistantEvent, StreamEvent, describe_tool_use, event_texts, scan_markers
from genbuilder.core.logging import job_extra
from genbuilder.core.workflow import GenerationStage, JobStatus
from genbuilder.db.store import JobStore
from genbuilder.tasks.writer import BackgroundWriter

log = logging.getLogger(__name__)

class StageTracker:
    """Maps decoded stream events of one job onto persisted stage updates.

    Markers are applied in the order they are seen, with no ordering check:
    a later recognized marker always wins. Intermediate writes are queued on
    the BackgroundWriter; ``finish`` is the only awaited write.

    A ``complete`` or ``failed`` marker in the stream moves ``current_stage``
    only. Until the runner's terminal write lands the record can read e.g.
    ``current_stage=failed`` with ``status=generating``; ``status`` is set by
    ``finish`` alone.
    """

    def __init__(
        self,
        job_id: str,
        store: JobStore,
        writer: BackgroundWriter,
        marker_tag: str = "GO4IT",
        error_max_chars: int = 1000,
    ):
        self.job_id = job_id
        self.store = store
        self.writer = writer
        self.marker_tag = marker_tag
        self.error_max_chars = error_max_chars
        self.current_stage = GenerationStage.PENDING
        self.events_seen = 0

    def handle_event(self, event: StreamEvent) -> None:
        self.events_seen += 1
        for text in event_texts(event):
            self.handle_text(text)
        if isinstance(event, AssistantEvent):
            for tool in event.tool_uses:
                detail = describe_tool_use(tool)
                if detail:
                    self.set_detail(detail)

    def handle_text(self, text: str) -> list[GenerationStage]:
        stages = scan_markers(text, self.marker_tag)
        for stage in stages:
            self.advance(stage)
        return stages

    def advance(self, stage: GenerationStage) -> None:
        fields: dict = {"current_stage": stage}
        if stage != GenerationStage.CODING:
            fields["current_detail"] = None
        # Terminal statuses are written by finish() only
        if stage != GenerationStage.PENDING and not stage.is_terminal:
            fields["status"] = JobStatus.GENERATING

        if stage != self.current_stage:
            log.info("Stage -> %s", stage, extra=job_extra(self.job_id, stage))
        self.current_stage = stage
        self.writer.submit(
            self.job_id,
            f"stage {stage}",
            functools.partial(self.store.update_generation, self.job_id, fields),
        )

    def set_detail(self, detail: str) -> None:
        self.writer.submit(
            self.job_id,
            "detail",
            functools.partial(self.store.update_generation, self.job_id, {"current_detail": detail}),
            quiet=True,
        )

    async def finish(
        self,
        stage: GenerationStage,
        title: str | None = None,
        description: str | None = None,
        error: str | None = None,
    ) -> None:
        """Persist the terminal state and wait for the write to land.

        A failed job keeps whatever stage was last persisted; only ``status``
        and ``error`` change.
        """
        if not stage.is_terminal:
            raise ValueError(f"{stage} is not a terminal stage")

        fields: dict = {"status": JobStatus(stage.value), "current_detail": None}
        if stage == GenerationStage.COMPLETE:
            fields["current_stage"] = stage
            fields["error"] = None
            if title:
                fields["title"] = title
            if description:
                fields["description"] = description
        elif error:
            fields["error"] = truncate(error, self.error_max_chars)

        await self.writer.submit_and_wait(
            self.job_id,
            f"terminal {stage}",
            functools.partial(self.store.update_generation, self.job_id, fields),
        )
        if stage == GenerationStage.COMPLETE:
            self.current_stage = stage
        log.info("Job %s", stage, extra=job_extra(self.job_id, self.current_stage))
