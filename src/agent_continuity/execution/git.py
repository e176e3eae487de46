from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from agent_continuity.domain.contracts import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 5.0
DEFAULT_MAX_BUFFER_BYTES = 1024 * 1024

_READ_CHUNK_BYTES = 64 * 1024


class GitCommandError(RuntimeError):
    def __init__(self, argv: Sequence[str], result: Optional[CommandResult] = None, reason: str = ""):
        self.argv = list(argv)
        self.result = result
        detail = reason or (result.stderr.strip() if result else "") or "git command failed"
        super().__init__(f"{' '.join(self.argv)}: {detail}")


class _OutputLimitExceeded(Exception):
    pass


async def _read_capped(stream: asyncio.StreamReader, limit: int) -> bytes:
    chunks: List[bytes] = []
    total = 0
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return b"".join(chunks)
        total += len(chunk)
        if total > limit:
            raise _OutputLimitExceeded()
        chunks.append(chunk)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        # Already exited.
        pass
    await proc.wait()


async def run_command(
    argv: Sequence[str],
    cwd: Optional[str] = None,
    timeout_sec: float = DEFAULT_TIMEOUT_SEC,
    max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
) -> CommandResult:
    """Run ``argv`` without a shell and capture its output.

    Output is read in chunks and the process is killed as soon as either
    stream passes ``max_buffer_bytes``.  Raises ``GitCommandError`` when the
    executable is missing, the timeout expires or the cap is exceeded.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd,
        )
    except (OSError, ValueError) as exc:
        raise GitCommandError(argv, reason=str(exc)) from exc

    async def _collect():
        out, err = await asyncio.gather(
            _read_capped(proc.stdout, max_buffer_bytes),
            _read_capped(proc.stderr, max_buffer_bytes),
        )
        await proc.wait()
        return out, err

    try:
        stdout, stderr = await asyncio.wait_for(_collect(), timeout=timeout_sec)
    except asyncio.TimeoutError:
        await _kill(proc)
        raise GitCommandError(argv, reason=f"timed out after {timeout_sec}s")
    except _OutputLimitExceeded:
        await _kill(proc)
        raise GitCommandError(argv, reason=f"output exceeded {max_buffer_bytes} bytes")
    return CommandResult(
        returncode=proc.returncode or 0,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )


class GitCli:
    """Version-control binding backed by the ``git`` executable."""

    def __init__(self, executable: str = "git", timeout_sec: float = DEFAULT_TIMEOUT_SEC):
        self._executable = executable
        self._timeout_sec = timeout_sec

    async def head_revision(self, root: str) -> str:
        out = await self.raw_command(root, ["rev-parse", "HEAD"], timeout_sec=self._timeout_sec)
        return out.strip()

    async def changed_paths(self, root: str) -> List[str]:
        out = await self.raw_command(
            root,
            ["status", "--porcelain=v1", "-z", "--untracked-files=all"],
            timeout_sec=self._timeout_sec,
        )
        return parse_porcelain_z(out)

    async def current_branch(self, root: str) -> str:
        out = await self.raw_command(root, ["rev-parse", "--abbrev-ref", "HEAD"], timeout_sec=self._timeout_sec)
        return out.strip()

    async def raw_command(
        self,
        root: str,
        args: Sequence[str],
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
    ) -> str:
        argv = [self._executable, "-C", str(root), *args]
        result = await run_command(argv, timeout_sec=timeout_sec, max_buffer_bytes=max_buffer_bytes)
        if result.returncode != 0:
            raise GitCommandError(argv, result=result)
        return result.stdout


def parse_porcelain_z(output: str) -> List[str]:
    """Extract paths from ``git status --porcelain=v1 -z`` output.

    Renames and copies report the destination path; the source path that
    follows them in the stream is skipped.
    """
    paths: List[str] = []
    entries = output.split("\0")
    idx = 0
    while idx < len(entries):
        entry = entries[idx]
        idx += 1
        if len(entry) < 4:
            continue
        status = entry[:2]
        paths.append(entry[3:])
        if "R" in status or "C" in status:
            idx += 1
    return paths
