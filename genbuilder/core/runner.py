from __future__ import annotations
import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Sequence
from genbuilder.core.buffers import LineSplitter, TailBuffer, truncate, utf8_decoder
from genbuilder.core.config import settings
from genbuilder.core.errors import BuilderError, ProcessFailure, SpawnError
from genbuilder.core.events import decode_line
from genbuilder.core.logging import job_extra
from genbuilder.core.registry import JobRegistry
from genbuilder.core.tracker import StageTracker
from genbuilder.core.workflow import AppMetadata, GenerationStage
from genbuilder.workspace.manager import extract_app_metadata
from genbuilder.workspace.preparer import InstallTask, WorkspacePreparer

log = logging.getLogger(__name__)

OnComplete = Callable[[AppMetadata], Awaitable[None]]
OnError = Callable[[str], Awaitable[None]]

CANCELLED_MESSAGE = "Cancelled by user"

@dataclass
class RunOutcome:
    job_id: str
    ok: bool
    returncode: int | None = None
    error: BuilderError | None = None
    metadata: AppMetadata | None = None

    @property
    def message(self) -> str | None:
        return str(self.error) if self.error else None

def failure_message(stderr: str, stdout: str, returncode: int | None) -> str:
    return stderr.strip() or stdout.strip() or f"Process exited with code {returncode}"

class ProcessRunner:
    """Runs the agent CLI for one job and drives it to a terminal state.

    The job must already be registered with the JobRegistry; ``run`` releases
    it exactly once, as soon as the subprocess has closed or failed to spawn.
    """

    def __init__(
        self,
        registry: JobRegistry,
        preparer: WorkspacePreparer,
        command: Sequence[str] | None = None,
        output_tail_chars: int | None = None,
        error_max_chars: int | None = None,
        read_size: int = 64 * 1024,
    ):
        self.registry = registry
        self.preparer = preparer
        self.command = list(command if command is not None else settings.agent_command)
        self.output_tail_chars = output_tail_chars or settings.output_tail_chars
        self.error_max_chars = error_max_chars or settings.error_max_chars
        self.read_size = read_size

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        if settings.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = settings.anthropic_api_key
        return env

    async def run(
        self,
        job_id: str,
        workspace_dir: str | Path,
        args: Sequence[str],
        tracker: StageTracker,
        on_complete: OnComplete | None = None,
        on_error: OnError | None = None,
        install_task: InstallTask | None = None,
    ) -> RunOutcome:
        argv = [*self.command, *args]
        log.info("Spawning agent in %s: %s", workspace_dir, " ".join(argv)[:200], extra=job_extra(job_id))
        log.info("ANTHROPIC_API_KEY set: %s", bool(settings.anthropic_api_key or os.environ.get("ANTHROPIC_API_KEY")),
                 extra=job_extra(job_id))

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(workspace_dir),
                env=self._env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self.registry.release(job_id)
            if isinstance(e, FileNotFoundError):
                error = SpawnError(f"Agent CLI not found: {argv[0]}")
            else:
                error = SpawnError(f"Failed to start agent CLI: {e}")
            log.error("Spawn error: %s", error, extra=job_extra(job_id, tracker.current_stage))
            return await self._fail(job_id, tracker, error, on_error)

        stdout_tail = TailBuffer(self.output_tail_chars)
        stderr_tail = TailBuffer(self.output_tail_chars)
        try:
            self.registry.attach(job_id, proc)
            await asyncio.gather(
                self._pump_stdout(job_id, proc.stdout, tracker, stdout_tail),
                self._pump_stderr(job_id, proc.stderr, stderr_tail),
            )
            returncode = await proc.wait()
        except BaseException:
            if proc.returncode is None:
                proc.kill()
            raise
        finally:
            active = self.registry.get(job_id)
            cancelled = bool(active and active.cancelled)
            self.registry.release(job_id)

        try:
            ws_files = sorted(p.name for p in Path(workspace_dir).iterdir())
        except OSError:
            ws_files = []
        log.info("Exit code: %s, events: %d, workspace files: %d (%s)",
                 returncode, tracker.events_seen, len(ws_files), ", ".join(ws_files[:10]),
                 extra=job_extra(job_id, tracker.current_stage))

        if cancelled:
            return await self._fail(job_id, tracker, ProcessFailure(CANCELLED_MESSAGE, returncode), on_error)
        if returncode != 0:
            stderr, stdout = stderr_tail.getvalue(), stdout_tail.getvalue()
            log.error("Failed with code %s\nstderr: %s\nstdout: %s", returncode, stderr, stdout,
                      extra=job_extra(job_id, tracker.current_stage))
            error = ProcessFailure(failure_message(stderr, stdout, returncode), returncode)
            return await self._fail(job_id, tracker, error, on_error)
        return await self._complete(job_id, workspace_dir, tracker, on_complete, install_task)

    async def _pump_stdout(self, job_id: str, stream: asyncio.StreamReader, tracker: StageTracker, tail: TailBuffer) -> None:
        decoder = utf8_decoder()
        splitter = LineSplitter()
        while True:
            chunk = await stream.read(self.read_size)
            if not chunk:
                break
            text = decoder.decode(chunk)
            tail.write(text)
            for line in splitter.feed(text):
                self._dispatch(job_id, tracker, line)
        tail.write(decoder.decode(b"", final=True))
        for line in splitter.flush():
            self._dispatch(job_id, tracker, line)

    async def _pump_stderr(self, job_id: str, stream: asyncio.StreamReader, tail: TailBuffer) -> None:
        decoder = utf8_decoder()
        while True:
            chunk = await stream.read(self.read_size)
            if not chunk:
                break
            text = decoder.decode(chunk)
            tail.write(text)
            if text.strip():
                log.info("stderr: %s", text.strip()[:500], extra=job_extra(job_id))

    def _dispatch(self, job_id: str, tracker: StageTracker, line: str) -> None:
        try:
            tracker.handle_event(decode_line(line))
        except Exception:
            log.exception("Failed to handle stream line", extra=job_extra(job_id, tracker.current_stage))

    async def _complete(
        self,
        job_id: str,
        workspace_dir: str | Path,
        tracker: StageTracker,
        on_complete: OnComplete | None,
        install_task: InstallTask | None,
    ) -> RunOutcome:
        metadata = extract_app_metadata(workspace_dir)
        log.info('Complete: title="%s", description="%s"', metadata.title, metadata.description[:100],
                 extra=job_extra(job_id, tracker.current_stage))

        tracker.advance(GenerationStage.FINALIZING)
        try:
            await self.preparer.prepare(job_id, workspace_dir, install_task, on_stage=tracker.advance)
        except Exception:
            log.exception("Workspace preparation crashed (non-fatal)", extra=job_extra(job_id, "finalizing"))

        try:
            await tracker.finish(GenerationStage.COMPLETE, title=metadata.title, description=metadata.description)
        except Exception:
            log.exception("Failed to persist completion", extra=job_extra(job_id, "complete"))

        if on_complete is not None:
            try:
                await on_complete(metadata)
            except Exception:
                log.exception("Completion callback failed", extra=job_extra(job_id, "complete"))
        return RunOutcome(job_id, True, 0, None, metadata)

    async def _fail(self, job_id: str, tracker: StageTracker, error: BuilderError, on_error: OnError | None) -> RunOutcome:
        message = truncate(str(error), self.error_max_chars)
        try:
            await tracker.finish(GenerationStage.FAILED, error=message)
        except Exception:
            log.exception("Failed to persist failure", extra=job_extra(job_id, tracker.current_stage))

        if on_error is not None:
            try:
                await on_error(message)
            except Exception:
                log.exception("Error callback failed", extra=job_extra(job_id, tracker.current_stage))
        returncode = error.returncode if isinstance(error, ProcessFailure) else None
        return RunOutcome(job_id, False, returncode, error)
