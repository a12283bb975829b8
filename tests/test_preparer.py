"""Tests for post-generation workspace preparation and the command helper."""
import asyncio
import sys
from pathlib import Path

import pytest

from genbuilder.core.errors import BestEffortFailure
from genbuilder.core.workflow import GenerationStage
from genbuilder.workspace.commands import run_command
from genbuilder.workspace.preparer import (
    BINARY_TARGETS,
    NPM_BUILD,
    NPM_INSTALL,
    PRISMA_DB_PUSH,
    PRISMA_FORMAT,
    PRISMA_GENERATE,
    SEED,
    WorkspacePreparer,
    build_error_lines,
    ensure_binary_targets,
    local_database_files,
)

from conftest import FakeCommands

SCHEMA = """generator client {
  provider = "prisma-client-js"
}

datasource db {
  provider = "sqlite"
  url      = env("DATABASE_URL")
}
"""


def _preparer(commands, **kwargs):
    return WorkspacePreparer(
        runner=commands, incremental_timeout=60, full_timeout=120, schema_timeout=30, seed_timeout=30,
        database_url="file:./dev.db", agent_command=["agent"], agent_model="sonnet", **kwargs,
    )


def _workspace(tmp_path, seed=True):
    (tmp_path / "prisma").mkdir()
    (tmp_path / "prisma" / "schema.prisma").write_text(SCHEMA)
    if seed:
        (tmp_path / "prisma" / "seed.ts").write_text("// seed\n")
    return tmp_path


def test_prepare_runs_every_step_in_order(tmp_path):
    commands = FakeCommands()
    asyncio.run(_preparer(commands).prepare("job-1", _workspace(tmp_path)))

    assert [list(c) for c in commands.commands] == [
        NPM_INSTALL, PRISMA_FORMAT, PRISMA_GENERATE, PRISMA_DB_PUSH, SEED, NPM_BUILD,
    ]
    assert commands.calls[0][1] == 120


def test_prepare_continues_past_failures(tmp_path):
    commands = FakeCommands(fail=[NPM_INSTALL, PRISMA_GENERATE, PRISMA_DB_PUSH], raise_on=[SEED])
    asyncio.run(_preparer(commands).prepare("job-1", _workspace(tmp_path)))

    assert list(commands.commands[-2]) == SEED
    assert list(commands.commands[-1]) == NPM_BUILD
    assert len(commands.calls) == 6


def test_seed_skipped_without_seed_file(tmp_path):
    commands = FakeCommands()
    asyncio.run(_preparer(commands).prepare("job-1", _workspace(tmp_path, seed=False)))
    assert SEED not in [list(c) for c in commands.commands]


def test_speculative_install_success_means_incremental_install(tmp_path):
    commands = FakeCommands()

    async def scenario():
        preparer = _preparer(commands)
        task = preparer.start_speculative_install("job-1", tmp_path)
        await preparer.install_dependencies("job-1", tmp_path, task)

    asyncio.run(scenario())
    assert commands.calls == [(tuple(NPM_INSTALL), 120), (tuple(NPM_INSTALL), 60)]


def test_speculative_install_failure_means_full_install(tmp_path):
    commands = FakeCommands(fail=[NPM_INSTALL])

    async def scenario():
        preparer = _preparer(commands)
        task = preparer.start_speculative_install("job-1", tmp_path)
        with pytest.raises(BestEffortFailure):
            await preparer.install_dependencies("job-1", tmp_path, task)

    asyncio.run(scenario())
    assert [timeout for _, timeout in commands.calls] == [120, 120]


def test_schema_sync_removes_stale_database(tmp_path):
    ws = _workspace(tmp_path)
    (ws / "dev.db").write_text("stale")
    (ws / "prisma" / "dev.db").write_text("stale")

    asyncio.run(_preparer(FakeCommands()).sync_schema("job-1", ws))

    assert not (ws / "dev.db").exists()
    assert not (ws / "prisma" / "dev.db").exists()


def test_binary_targets_injected_once(tmp_path):
    schema = _workspace(tmp_path) / "prisma" / "schema.prisma"

    assert ensure_binary_targets(schema)
    patched = schema.read_text()
    assert f"binaryTargets = {BINARY_TARGETS}" in patched
    assert not ensure_binary_targets(schema)
    assert schema.read_text() == patched


def test_local_database_files(tmp_path):
    assert local_database_files(tmp_path, "file:./dev.db") == [tmp_path / "dev.db", tmp_path / "prisma" / "dev.db"]
    assert local_database_files(tmp_path, "postgres://db/app") == []


def test_run_command_captures_output(tmp_path):
    result = asyncio.run(run_command([sys.executable, "-c", "print('hi')"], tmp_path, timeout=10))
    assert result.ok
    assert result.output.strip() == "hi"


def test_run_command_times_out(tmp_path):
    result = asyncio.run(run_command([sys.executable, "-c", "import time; time.sleep(10)"], tmp_path, timeout=0.5))
    assert result.timed_out
    assert not result.ok
    assert result.describe() == "timed out"


def test_run_command_missing_executable(tmp_path):
    result = asyncio.run(run_command([str(tmp_path / "missing")], tmp_path, timeout=5))
    assert result.returncode is None
    assert not result.ok


def test_cancelled_install_wait_is_not_swallowed(tmp_path):
    commands = FakeCommands(slow=[NPM_INSTALL], delay=5)

    async def scenario():
        preparer = _preparer(commands)
        install = preparer.start_speculative_install("job-1", tmp_path)
        waiter = asyncio.get_running_loop().create_task(preparer.install_dependencies("job-1", tmp_path, install))
        await asyncio.sleep(0.05)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        still_running = not install.task.done()
        await install.discard()
        return still_running, install

    still_running, install = asyncio.run(scenario())
    # Only the speculative install ran; no fallback full install after the cancel
    assert commands.calls == [(tuple(NPM_INSTALL), 120)]
    assert still_running
    assert install.task.cancelled()


def test_discarded_install_reads_as_failed(tmp_path):
    commands = FakeCommands(slow=[NPM_INSTALL], delay=5)

    async def scenario():
        install = _preparer(commands).start_speculative_install("job-1", tmp_path)
        await asyncio.sleep(0)
        await install.discard()
        return await install.result()

    assert asyncio.run(scenario()) is False


def test_schema_sync_continues_when_stale_database_cannot_be_removed(tmp_path, monkeypatch):
    ws = _workspace(tmp_path)
    (ws / "dev.db").write_text("stale")

    def locked(self, missing_ok=False):
        raise PermissionError("database is locked")

    monkeypatch.setattr(Path, "unlink", locked)
    commands = FakeCommands()
    asyncio.run(_preparer(commands).sync_schema("job-1", ws))

    assert list(commands.commands[-1]) == PRISMA_DB_PUSH


def test_build_failure_is_handed_to_the_agent_until_attempts_run_out(tmp_path):
    ws = _workspace(tmp_path)
    (ws / ".next" / "cache").mkdir(parents=True)
    commands = FakeCommands(fail=[NPM_BUILD], fail_output="Type error: 'x' is not assignable\ninfo  - Linting\n")
    stages = []

    error = asyncio.run(_preparer(commands).validate_build("job-1", ws, on_stage=stages.append))

    assert error == "Type error: 'x' is not assignable"
    assert not (ws / ".next").exists()
    assert [c for c in commands.commands if c == tuple(NPM_BUILD)] == [tuple(NPM_BUILD)] * 3
    fixes = [c for c in commands.commands if c[0] == "agent"]
    assert len(fixes) == 2
    prompt = fixes[0][fixes[0].index("-p") + 1]
    assert "Type error: 'x' is not assignable" in prompt
    assert "src/auth.ts" in prompt
    assert "--continue" in fixes[0]
    assert stages == [GenerationStage.CODING, GenerationStage.FINALIZING] * 2


def test_failed_fix_stops_the_loop(tmp_path):
    ws = _workspace(tmp_path)
    commands = FakeCommands(fail=[NPM_BUILD, ["agent"]], fail_output="Error: Module not found: 'x'")
    stages = []

    error = asyncio.run(_preparer(commands).validate_build("job-1", ws, on_stage=stages.append))

    assert error == "Error: Module not found: 'x'"
    assert len([c for c in commands.commands if c[0] == "agent"]) == 1
    assert [c for c in commands.commands if c == tuple(NPM_BUILD)] == [tuple(NPM_BUILD)]
    assert stages == [GenerationStage.CODING]


def test_warning_only_build_without_output_is_a_failure(tmp_path):
    ws = _workspace(tmp_path)
    commands = FakeCommands(fail=[NPM_BUILD], fail_output="⚠ The middleware file convention is deprecated\n")

    error = asyncio.run(_preparer(commands).try_build("job-1", ws))

    assert error == "⚠ The middleware file convention is deprecated"


def test_warning_only_build_with_standalone_output_passes(tmp_path):
    ws = _workspace(tmp_path)
    (ws / ".next" / "standalone").mkdir(parents=True)
    commands = FakeCommands(fail=[NPM_BUILD], fail_output="⚠ Compiled with warnings\n")

    assert asyncio.run(_preparer(commands).try_build("job-1", ws)) is None


def test_build_validation_can_be_disabled(tmp_path):
    commands = FakeCommands()
    asyncio.run(_preparer(commands, validate_builds=False).prepare("job-1", _workspace(tmp_path)))
    assert tuple(NPM_BUILD) not in commands.commands


def test_build_error_lines_drop_warnings():
    output = "\n".join([
        "▲ Next.js 15",
        "⚠ middleware is deprecated, use proxy instead",
        "Use proxy instead of rewrites",
        "⚠ Compiled with warnings",
        "Failed to compile.",
        "./src/app/page.tsx:3 Type error: Cannot find name 'Foo'",
        "⨯ Build failed",
    ])
    assert build_error_lines(output) == [
        "./src/app/page.tsx:3 Type error: Cannot find name 'Foo'",
        "⨯ Build failed",
    ]
    assert len(build_error_lines("error\n" * 30)) == 10
