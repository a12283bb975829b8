"""Post-generation preparation of a workspace.

Runs after the agent exits successfully: dependency install, Prisma schema sync
against a throwaway SQLite file, seed data, then build validation with a
bounded number of agent auto-fix passes. Every step is best-effort: a failure
is logged and the next step still runs, and nothing here can fail the job.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Callable, Sequence

from genbuilder.core.config import settings
from genbuilder.core.errors import BestEffortFailure
from genbuilder.core.logging import job_extra
from genbuilder.core.prompt import build_cli_args, build_fix_prompt
from genbuilder.core.workflow import GenerationStage
from genbuilder.workspace.commands import CommandResult, CommandRunner, run_command

log = logging.getLogger(__name__)

NPM_INSTALL = ["npm", "install", "--ignore-scripts"]
NPM_BUILD = ["npm", "run", "build"]
PRISMA_FORMAT = ["npx", "prisma", "format"]
PRISMA_GENERATE = ["npx", "prisma", "generate"]
PRISMA_DB_PUSH = ["npx", "prisma", "db", "push", "--accept-data-loss"]
SEED = ["npx", "tsx", "prisma/seed.ts"]

BINARY_TARGETS = '["native", "debian-openssl-1.1.x", "debian-openssl-3.0.x"]'
_PROVIDER_LINE = re.compile(r'provider\s*=\s*"prisma-client-js"')

OnStage = Callable[[GenerationStage], None]


class InstallTask:
    """Handle to the speculative ``npm install`` started next to the agent.

    The result is read by the preparer instead of starting a second install
    against the same ``node_modules``.
    """

    def __init__(self, job_id: str, task: asyncio.Task):
        self.job_id = job_id
        self.task = task

    async def result(self) -> bool:
        try:
            # Shielded so cancelling the reader does not cancel the install
            outcome: CommandResult = await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.task.cancelled():
                return False
            raise
        except Exception as e:
            log.warning("Speculative install errored: %s", e, extra=job_extra(self.job_id))
            return False
        if not outcome.ok:
            log.info("Speculative install failed: %s", outcome.describe(), extra=job_extra(self.job_id))
        return outcome.ok

    def cancel(self) -> None:
        self.task.cancel()

    async def discard(self) -> None:
        """Cancel the install if it is still running and wait for it to unwind."""
        if self.task.done():
            return
        log.info("Discarding speculative npm install", extra=job_extra(self.job_id))
        self.task.cancel()
        await asyncio.gather(self.task, return_exceptions=True)


class WorkspacePreparer:
    def __init__(
        self,
        runner: CommandRunner = run_command,
        incremental_timeout: float | None = None,
        full_timeout: float | None = None,
        schema_timeout: float | None = None,
        seed_timeout: float | None = None,
        database_url: str | None = None,
        validate_builds: bool | None = None,
        build_timeout: float | None = None,
        fix_timeout: float | None = None,
        max_fix_attempts: int | None = None,
        agent_command: Sequence[str] | None = None,
        agent_model: str | None = None,
    ):
        self.runner = runner
        self.incremental_timeout = incremental_timeout or settings.install_incremental_timeout
        self.full_timeout = full_timeout or settings.install_full_timeout
        self.schema_timeout = schema_timeout or settings.schema_sync_timeout
        self.seed_timeout = seed_timeout or settings.seed_timeout
        self.database_url = database_url or settings.local_database_url
        self.validate_builds = settings.build_validation if validate_builds is None else validate_builds
        self.build_timeout = build_timeout or settings.build_timeout
        self.fix_timeout = fix_timeout or settings.auto_fix_timeout
        self.max_fix_attempts = settings.max_auto_fix_attempts if max_fix_attempts is None else max_fix_attempts
        self.agent_command = list(agent_command if agent_command is not None else settings.agent_command)
        self.agent_model = agent_model or settings.agent_model

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["DATABASE_URL"] = self.database_url
        return env

    def _agent_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if settings.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = settings.anthropic_api_key
        return env

    async def _run(self, job_id: str, step: str, args: list[str], cwd: Path, timeout: float, env=None) -> None:
        result = await self.runner(args, cwd=cwd, timeout=timeout, env=env)
        if not result.ok:
            raise BestEffortFailure(f"{step} failed ({result.describe()})")
        log.info("%s finished", step, extra=job_extra(job_id, "finalizing"))

    def start_speculative_install(self, job_id: str, workspace_dir: str | Path) -> InstallTask:
        log.info("Starting speculative npm install", extra=job_extra(job_id))
        task = asyncio.get_running_loop().create_task(
            self.runner(NPM_INSTALL, cwd=Path(workspace_dir), timeout=self.full_timeout),
            name=f"install-{job_id}",
        )
        return InstallTask(job_id, task)

    async def prepare(
        self,
        job_id: str,
        workspace_dir: str | Path,
        install_task: InstallTask | None = None,
        on_stage: OnStage | None = None,
    ) -> None:
        root = Path(workspace_dir)
        steps = [
            ("dependency install", lambda: self.install_dependencies(job_id, root, install_task)),
            ("schema sync", lambda: self.sync_schema(job_id, root)),
            ("seed", lambda: self.seed(job_id, root)),
        ]
        if self.validate_builds:
            steps.append(("build validation", lambda: self.validate_build(job_id, root, on_stage)))
        for name, step in steps:
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("%s failed (non-fatal): %s", name, e, extra=job_extra(job_id, "finalizing"))

    async def install_dependencies(self, job_id: str, root: Path, install_task: InstallTask | None = None) -> None:
        if install_task is not None:
            log.info("Waiting for speculative npm install", extra=job_extra(job_id, "finalizing"))
            if await install_task.result():
                await self._run(job_id, "incremental npm install", NPM_INSTALL, root, self.incremental_timeout)
                return
            log.info("Speculative install failed, running full install", extra=job_extra(job_id, "finalizing"))
        await self._run(job_id, "npm install", NPM_INSTALL, root, self.full_timeout)

    async def sync_schema(self, job_id: str, root: Path) -> None:
        env = self._env()
        schema_path = root / "prisma" / "schema.prisma"
        if schema_path.is_file() and ensure_binary_targets(schema_path):
            log.info("Injected binaryTargets into schema", extra=job_extra(job_id, "database"))

        await self._regenerate_client(job_id, root, env)

        # A stale database would duplicate seed rows across iterations
        for db_file in local_database_files(root, self.database_url):
            if not db_file.is_file():
                continue
            try:
                db_file.unlink()
            except OSError as e:
                log.warning("Could not remove stale database %s: %s", db_file, e, extra=job_extra(job_id, "database"))
        await self._run(job_id, "prisma db push", PRISMA_DB_PUSH, root, self.schema_timeout, env)

    async def _regenerate_client(self, job_id: str, root: Path, env: dict[str, str]) -> None:
        for step, args, timeout in (
            ("prisma format", PRISMA_FORMAT, 15.0),
            ("prisma generate", PRISMA_GENERATE, self.schema_timeout),
        ):
            try:
                await self._run(job_id, step, args, root, timeout, env)
            except BestEffortFailure as e:
                log.info("%s", e, extra=job_extra(job_id, "database"))

    async def seed(self, job_id: str, root: Path) -> None:
        if not (root / "prisma" / "seed.ts").is_file():
            return
        await self._run(job_id, "seed", SEED, root, self.seed_timeout, self._env())

    # Build validation

    async def validate_build(self, job_id: str, root: Path, on_stage: OnStage | None = None) -> str | None:
        """Build the app, handing build errors back to the agent to fix.

        The first build starts from a clean ``.next``; later ones keep the
        cache. Returns the last build error, or None once the build passes.
        The stage moves back to ``coding`` while the agent works on a fix and
        returns to ``finalizing`` before the rebuild.
        """
        error = await self.try_build(job_id, root, clean=True)
        attempt = 0
        while error and attempt < self.max_fix_attempts:
            attempt += 1
            log.info("Auto-fix attempt %d/%d", attempt, self.max_fix_attempts, extra=job_extra(job_id, "finalizing"))
            if on_stage is not None:
                on_stage(GenerationStage.CODING)
            if not await self.auto_fix(job_id, root, error):
                log.error("Auto-fix agent failed, giving up", extra=job_extra(job_id, "coding"))
                break

            # The fix may have touched dependencies or the schema
            try:
                await self._run(job_id, "incremental npm install", NPM_INSTALL, root, self.incremental_timeout)
            except BestEffortFailure as e:
                log.info("%s", e, extra=job_extra(job_id, "coding"))
            await self._regenerate_client(job_id, root, self._env())

            if on_stage is not None:
                on_stage(GenerationStage.FINALIZING)
            error = await self.try_build(job_id, root)

        if error:
            log.error("Build still failing after auto-fix attempts, proceeding anyway",
                      extra=job_extra(job_id, "finalizing"))
        return error

    async def try_build(self, job_id: str, root: Path, clean: bool = False) -> str | None:
        if clean:
            shutil.rmtree(root / ".next", ignore_errors=True)
        log.info("Running build validation", extra=job_extra(job_id, "finalizing"))
        result = await self.runner(NPM_BUILD, cwd=root, timeout=self.build_timeout, env=self._env())
        if result.ok:
            log.info("Build passed", extra=job_extra(job_id, "finalizing"))
            return None

        errors = build_error_lines(result.output)
        if not errors:
            if (root / ".next" / "standalone").is_dir():
                log.info("Build exited non-zero with warnings only, treating as passed",
                         extra=job_extra(job_id, "finalizing"))
                return None
            tail = "\n".join(result.output.splitlines()[-20:]).strip()
            return tail or f"Build failed ({result.describe()}) without producing .next/standalone"

        error = "\n".join(errors)
        log.error("Build failed:\n%s", error, extra=job_extra(job_id, "finalizing"))
        return error

    async def auto_fix(self, job_id: str, root: Path, build_error: str) -> bool:
        args = [*self.agent_command, *build_cli_args(build_fix_prompt(build_error), self.agent_model, use_continue=True)]
        log.info("Auto-fix: running agent with --continue", extra=job_extra(job_id, "coding"))
        result = await self.runner(args, cwd=root, timeout=self.fix_timeout, env=self._agent_env())
        log.info("Auto-fix agent finished: %s", "ok" if result.ok else result.describe(),
                 extra=job_extra(job_id, "coding"))
        return result.ok


def build_error_lines(output: str, limit: int = 10) -> list[str]:
    """Lines of build output that report real errors, deprecation and warning noise removed."""
    lines = []
    for line in output.splitlines():
        if "middleware" in line and "deprecated" in line:
            continue
        if "proxy" in line and "instead" in line:
            continue
        if "⚠" in line and "Error" not in line:
            continue
        if "Error" in line or "error" in line or "Module not found" in line or "⨯" in line:
            lines.append(line)
    return lines[:limit]


def ensure_binary_targets(schema_path: Path) -> bool:
    schema = schema_path.read_text(encoding="utf-8")
    if "binaryTargets" in schema or not _PROVIDER_LINE.search(schema):
        return False
    schema = _PROVIDER_LINE.sub(
        f'provider      = "prisma-client-js"\n  binaryTargets = {BINARY_TARGETS}', schema, count=1
    )
    schema_path.write_text(schema, encoding="utf-8")
    return True


def local_database_files(root: Path, database_url: str) -> list[Path]:
    """Candidate files for a ``file:`` database URL.

    Prisma resolves relative paths against the schema directory, while other
    tooling resolves them against the workspace root; both are returned.
    """
    if not database_url.startswith("file:"):
        return []
    path = Path(database_url[len("file:"):])
    if path.is_absolute():
        return [path]
    return [root / path, root / "prisma" / path]
