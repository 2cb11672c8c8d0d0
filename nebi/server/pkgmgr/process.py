"""Run an external tool and stream its output line by line.

The child runs in its own process group so that cancelling the awaiting task
can signal the whole tree (pixi spawns solver and installer subprocesses).
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import signal
import sys
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from nebi.server.pkgmgr.base import LogWriter, ToolFailureError, ToolMissingError

STDERR_TAIL_LINES = 20
LINE_LIMIT = 1 << 20
READ_CHUNK = 64 * 1024
TAIL_LINE_CHARS = 1000
KILL_GRACE_SECONDS = 5.0


@dataclass
class ProcessResult:
    exit_code: int
    stderr_tail: str


async def run_streaming(
    argv: Sequence[str],
    *,
    cwd: Path,
    writer: LogWriter | None = None,
    env: Mapping[str, str] | None = None,
    kill_grace: float = KILL_GRACE_SECONDS,
) -> ProcessResult:
    """Run *argv* in *cwd*, forwarding stdout and stderr lines to *writer*.

    Output is split on newlines; a line longer than ``LINE_LIMIT`` characters
    is forwarded in pieces.  If the call is cancelled or forwarding fails,
    the process group receives SIGTERM, then SIGKILL after *kill_grace*
    seconds, and is reaped before the exception propagates.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            start_new_session=sys.platform != "win32",
        )
    except FileNotFoundError as exc:
        msg = f"executable not found: {argv[0]}"
        raise ToolMissingError(msg) from exc

    logger.debug("Spawned {} (pid={}, cwd={})", " ".join(argv), proc.pid, cwd)
    tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    async def emit(text: str, is_stderr: bool) -> None:
        if is_stderr:
            tail.append(text.rstrip("\r\n")[-TAIL_LINE_CHARS:])
        if writer is not None:
            await writer.write(text)

    async def pump(stream: asyncio.StreamReader, is_stderr: bool) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            data = await stream.read(READ_CHUNK)
            pending += decoder.decode(data, final=not data)
            *lines, pending = pending.split("\n")
            for line in lines:
                await emit(line + "\n", is_stderr)
            if not data:
                if pending:
                    await emit(pending, is_stderr)
                return
            # Oversized lines go out in pieces rather than growing without bound.
            if len(pending) >= LINE_LIMIT:
                await emit(pending, is_stderr)
                pending = ""

    assert proc.stdout is not None
    assert proc.stderr is not None
    pumps = [
        asyncio.create_task(pump(proc.stdout, False)),
        asyncio.create_task(pump(proc.stderr, True)),
    ]
    try:
        await asyncio.gather(*pumps)
        exit_code = await proc.wait()
    except BaseException:
        for task in pumps:
            task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)
        await _terminate(proc, kill_grace)
        raise

    return ProcessResult(exit_code=exit_code, stderr_tail="\n".join(tail))


async def run_tool(
    binary: str,
    args: Sequence[str],
    *,
    cwd: Path,
    writer: LogWriter | None = None,
    env: Mapping[str, str] | None = None,
) -> None:
    """Run ``binary args...`` and raise ``ToolFailureError`` on non-zero exit."""
    result = await run_streaming([binary, *args], cwd=cwd, writer=writer, env=env)
    if result.exit_code != 0:
        command = " ".join([Path(binary).name, *args[:1]])
        raise ToolFailureError(command, result.exit_code, result.stderr_tail)


async def _terminate(proc: asyncio.subprocess.Process, grace: float) -> None:
    if proc.returncode is not None:
        return
    logger.info("Cancelling pid {}: sending SIGTERM", proc.pid)
    _signal_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except TimeoutError:
        logger.warning("pid {} ignored SIGTERM for {}s: sending SIGKILL", proc.pid, grace)
        _signal_group(proc, signal.SIGKILL if sys.platform != "win32" else signal.SIGTERM)
        await proc.wait()


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    with contextlib.suppress(ProcessLookupError):
        if sys.platform == "win32":
            proc.terminate()
        else:
            os.killpg(proc.pid, sig)
