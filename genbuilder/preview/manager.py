from __future__ import annotations
import asyncio
import logging
import os
import re
import signal
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Sequence
import httpx
from genbuilder.core.buffers import TailBuffer, truncate, utf8_decoder
from genbuilder.core.config import settings
from genbuilder.core.errors import PreviewFailure
from genbuilder.core.logging import job_extra
from genbuilder.preview.patcher import build_preview_env, patch_workspace_for_preview
from genbuilder.workspace.manager import write_default_env
from genbuilder.workspace.preparer import WorkspacePreparer, local_database_files

log = logging.getLogger(__name__)

class PreviewStatus(str, Enum):
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    # Set on a session once it has been torn down; never reported by status()
    STOPPED = "stopped"

    def __str__(self) -> str:
        return self.value

@dataclass
class PreviewSession:
    job_id: str
    workspace: Path
    port: int
    url: str
    status: PreviewStatus = PreviewStatus.STARTING
    error: str | None = None
    process: asyncio.subprocess.Process | None = None
    output: TailBuffer = field(default_factory=lambda: TailBuffer(2000))
    tasks: list[asyncio.Task] = field(default_factory=list)
    # Background start task still setting the session up, if any
    starter: asyncio.Task | None = field(default=None, repr=False)

    @property
    def alive(self) -> bool:
        return self.status in (PreviewStatus.STARTING, PreviewStatus.READY)

    def snapshot(self) -> dict:
        return {"status": self.status.value, "url": self.url, "port": self.port, "error": self.error}

class PreviewManager:
    """Owner of the one dev-server preview the service may run.

    ``start`` always tears the previous session down completely (process group
    signalled and reaped, a still-running background setup cancelled) and
    installs the new ``starting`` session before anything else happens, so two
    preview processes never overlap. The slow setup (install, schema sync,
    seed) runs outside the lock; a session replaced meanwhile is never
    spawned. Only the current session is remembered.
    """

    def __init__(
        self,
        preparer: WorkspacePreparer,
        port: int | None = None,
        url_template: str | None = None,
        command: Sequence[str] | None = None,
        ready_timeout: float | None = None,
        stop_grace: float | None = None,
        probe_interval: float = 1.0,
        http_probe: bool = True,
        base_env: Mapping[str, str] | None = None,
    ):
        self.preparer = preparer
        self.port = port or settings.preview_port
        self.url_template = url_template or settings.preview_url_template
        self.command = list(command if command is not None else settings.preview_command)
        self.ready_timeout = ready_timeout if ready_timeout is not None else settings.preview_ready_timeout
        self.stop_grace = stop_grace if stop_grace is not None else settings.preview_stop_grace
        self.probe_interval = probe_interval
        self.http_probe = http_probe
        self.base_env = base_env
        self._session: PreviewSession | None = None
        self._lock = asyncio.Lock()
        self._starts: set[asyncio.Task] = set()
        self._ready_pattern = re.compile(r"\b[Rr]eady\b|localhost:%d\b" % self.port)

    @property
    def active(self) -> PreviewSession | None:
        return self._session

    # Public operations

    async def start(self, job_id: str, workspace_dir: str | Path) -> PreviewSession:
        workspace = Path(workspace_dir)
        async with self._lock:
            await self._teardown()
            session = PreviewSession(
                job_id, workspace, self.port, self.url_template.format(port=self.port),
                output=TailBuffer(settings.output_tail_chars),
            )
            current = asyncio.current_task()
            if current in self._starts:
                session.starter = current
            self._session = session
        log.info("Starting preview on port %d", self.port, extra=job_extra(job_id))

        # Setup runs unlocked so a newer start can pre-empt this one
        if not workspace.is_dir():
            self._fail(session, PreviewFailure("App source directory not found"))
            return session
        try:
            patch_workspace_for_preview(job_id, workspace)
            write_default_env(workspace, settings.local_database_url, settings.preview_auth_secret)
        except OSError as e:
            self._fail(session, PreviewFailure(f"Failed to patch workspace for preview: {e}"))
            return session
        await self._ensure_dependencies(session)

        async with self._lock:
            if self._session is not session:
                log.info("Preview superseded before spawn", extra=job_extra(job_id))
                return session
            await self._spawn(session)
        return session

    def start_in_background(self, job_id: str, workspace_dir: str | Path) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._start_logged(job_id, workspace_dir), name=f"preview-start-{job_id}"
        )
        self._starts.add(task)
        task.add_done_callback(self._starts.discard)
        return task

    async def _start_logged(self, job_id: str, workspace_dir: str | Path) -> None:
        try:
            await self.start(job_id, workspace_dir)
        except Exception:
            log.exception("Preview start crashed", extra=job_extra(job_id))

    def status(self, job_id: str) -> dict | None:
        session = self._session
        if session is None or session.job_id != job_id:
            return None
        return session.snapshot()

    async def stop(self, job_id: str) -> bool:
        async with self._lock:
            if self._session is None or self._session.job_id != job_id:
                return False
            await self._teardown()
            return True

    async def shutdown(self) -> None:
        for task in list(self._starts):
            task.cancel()
        await asyncio.gather(*list(self._starts), return_exceptions=True)
        async with self._lock:
            await self._teardown()

    # Startup steps

    async def _ensure_dependencies(self, session: PreviewSession) -> None:
        job_id, workspace = session.job_id, session.workspace
        if not (workspace / "node_modules").is_dir():
            log.info("Installing dependencies for preview", extra=job_extra(job_id))
            try:
                await self.preparer.install_dependencies(job_id, workspace)
            except Exception as e:
                log.warning("Dependency install failed (non-fatal): %s", e, extra=job_extra(job_id))
        else:
            log.info("Dependencies already installed, skipping npm install", extra=job_extra(job_id))

        if any(p.is_file() for p in local_database_files(workspace, settings.local_database_url)):
            return
        log.info("Setting up preview database", extra=job_extra(job_id))
        for step in (self.preparer.sync_schema, self.preparer.seed):
            try:
                await step(job_id, workspace)
            except Exception as e:
                log.warning("Database setup step failed (non-fatal): %s", e, extra=job_extra(job_id))

    async def _spawn(self, session: PreviewSession) -> None:
        argv = [part.format(port=session.port) for part in self.command]
        env = build_preview_env(
            self.base_env if self.base_env is not None else os.environ,
            session.port,
            settings.local_database_url,
            settings.preview_auth_secret,
            settings.preview_env_blocklist,
            settings.preview_env_blocked_prefixes,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(session.workspace),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            self._fail(session, PreviewFailure(f"Failed to start dev server: {e}"))
            return

        session.process = proc
        log.info("Dev server spawned (pid %d): %s", proc.pid, " ".join(argv), extra=job_extra(session.job_id))
        loop = asyncio.get_running_loop()
        session.tasks = [
            loop.create_task(self._watch_output(session), name=f"preview-output-{session.job_id}"),
            loop.create_task(self._watch_readiness(session), name=f"preview-ready-{session.job_id}"),
        ]

    # Monitoring

    def _mark_ready(self, session: PreviewSession, reason: str) -> None:
        if session.status == PreviewStatus.STARTING:
            session.status = PreviewStatus.READY
            log.info("Ready at %s (%s)", session.url, reason, extra=job_extra(session.job_id))

    def _fail(self, session: PreviewSession, error: PreviewFailure) -> None:
        session.status = PreviewStatus.FAILED
        session.error = truncate(str(error), settings.error_max_chars)
        log.error("Preview failed: %s", session.error, extra=job_extra(session.job_id))

    async def _watch_output(self, session: PreviewSession) -> None:
        proc = session.process
        decoder = utf8_decoder()
        while True:
            chunk = await proc.stdout.read(4096)
            if not chunk:
                break
            text = decoder.decode(chunk)
            session.output.write(text)
            if session.status == PreviewStatus.STARTING and self._ready_pattern.search(text):
                self._mark_ready(session, "dev server output")
            if "error" in text.lower():
                log.warning("dev server: %s", text.strip()[:500], extra=job_extra(session.job_id))

        code = await proc.wait()
        log.info("Dev server exited with code %s", code, extra=job_extra(session.job_id))
        if self._session is session and session.alive:
            tail = session.output.getvalue().strip()
            message = f"Process exited with code {code}"
            self._fail(session, PreviewFailure(f"{message}: {tail[-500:]}" if tail else message))

    async def _watch_readiness(self, session: PreviewSession) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        probe_url = f"http://127.0.0.1:{session.port}"
        async with httpx.AsyncClient(timeout=2.0) as client:
            while session.status == PreviewStatus.STARTING:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                if self.http_probe:
                    try:
                        response = await client.get(probe_url)
                        if response.status_code < 400:
                            self._mark_ready(session, f"HTTP {response.status_code}")
                            return
                    except httpx.HTTPError:
                        pass
                await asyncio.sleep(min(self.probe_interval, max(remaining, 0)))

        if session.status == PreviewStatus.STARTING and session.process.returncode is None:
            self._mark_ready(session, f"no readiness signal within {self.ready_timeout:g}s, assuming ready")

    # Teardown

    async def _teardown(self) -> None:
        session = self._session
        if session is None:
            return
        self._session = None
        session.status = PreviewStatus.STOPPED

        starter = session.starter
        if starter is not None and starter is not asyncio.current_task() and not starter.done():
            starter.cancel()
            await asyncio.gather(starter, return_exceptions=True)

        proc = session.process
        if proc is not None and proc.returncode is None:
            _signal_group(proc, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.stop_grace)
            except asyncio.TimeoutError:
                log.warning("Dev server ignored SIGTERM, killing", extra=job_extra(session.job_id))
                _signal_group(proc, signal.SIGKILL)
                await proc.wait()
        elif proc is not None:
            # Leader is gone; make sure nothing it spawned outlives it
            _signal_group(proc, signal.SIGKILL)

        for task in session.tasks:
            task.cancel()
        await asyncio.gather(*session.tasks, return_exceptions=True)
        log.info("Preview stopped", extra=job_extra(session.job_id))

def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.send_signal(sig)
