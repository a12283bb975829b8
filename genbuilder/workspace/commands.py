from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Sequence

log = logging.getLogger(__name__)

@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int | None
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def describe(self) -> str:
        if self.timed_out:
            return "timed out"
        if self.returncode is None:
            return f"could not start: {self.output}"
        return f"exit code {self.returncode}: {self.output[-500:].strip()}"

CommandRunner = Callable[..., Awaitable[CommandResult]]

async def run_command(
    args: Sequence[str],
    cwd: str | Path,
    timeout: float,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run a command to completion with a hard timeout. Never raises for process failures."""
    log.debug("Running %s in %s (timeout %ss)", " ".join(args), cwd, timeout)
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        return CommandResult(tuple(args), None, str(e))

    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill(proc)
        await proc.wait()
        return CommandResult(tuple(args), proc.returncode, "", timed_out=True)
    except asyncio.CancelledError:
        _kill(proc)
        raise

    return CommandResult(tuple(args), proc.returncode, (out or b"").decode("utf-8", errors="replace"))

def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
