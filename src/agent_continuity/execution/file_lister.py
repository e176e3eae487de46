from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from agent_continuity.domain.contracts import GitBinding
from agent_continuity.execution.git import GitCommandError, run_command

logger = logging.getLogger(__name__)

LIST_TIMEOUT_SEC = 8.0
LIST_MAX_BUFFER_BYTES = 6 * 1024 * 1024
WALK_MAX_FILES = 20_000

_SKIP_DIRS = {".git", ".venv", "venv", "__pycache__", ".mypy_cache", ".pytest_cache", "dist", "node_modules"}


class RipgrepFileLister:
    """Lists repository files, relative to the root.

    Tries ``rg --files`` first, then ``git ls-files`` through the git
    binding, then a bounded directory walk.  Each tier failing falls
    through to the next; the last resort is an empty list.
    """

    def __init__(
        self,
        git: Optional[GitBinding] = None,
        rg_executable: str = "rg",
        timeout_sec: float = LIST_TIMEOUT_SEC,
        max_buffer_bytes: int = LIST_MAX_BUFFER_BYTES,
        walk_max_files: int = WALK_MAX_FILES,
    ):
        self._git = git
        self._rg = rg_executable
        self._timeout_sec = timeout_sec
        self._max_buffer_bytes = max_buffer_bytes
        self._walk_max_files = max(1, int(walk_max_files))

    async def list_files(self, root: str) -> List[str]:
        files = await self._list_with_ripgrep(root)
        if files is not None:
            return files
        files = await self._list_with_git(root)
        if files is not None:
            return files
        try:
            return await asyncio.to_thread(self._walk, Path(root))
        except OSError as exc:
            logger.debug("file walk failed for %s: %s", root, exc)
            return []

    async def _list_with_ripgrep(self, root: str) -> Optional[List[str]]:
        try:
            result = await run_command(
                [self._rg, "--files"],
                cwd=root,
                timeout_sec=self._timeout_sec,
                max_buffer_bytes=self._max_buffer_bytes,
            )
        except GitCommandError as exc:
            logger.debug("rg --files unavailable for %s: %s", root, exc)
            return None
        # rg exits 1 when nothing matched; anything above that is an error.
        if result.returncode > 1:
            logger.debug("rg --files failed for %s: %s", root, result.stderr.strip())
            return None
        return _split_lines(result.stdout)

    async def _list_with_git(self, root: str) -> Optional[List[str]]:
        if self._git is None:
            return None
        try:
            out = await self._git.raw_command(
                root,
                ["ls-files", "--cached", "--others", "--exclude-standard"],
                timeout_sec=self._timeout_sec,
                max_buffer_bytes=self._max_buffer_bytes,
            )
        except Exception as exc:
            logger.debug("git ls-files failed for %s: %s", root, exc)
            return None
        return _split_lines(out)

    def _walk(self, root: Path) -> List[str]:
        base = root.expanduser().resolve()
        if not base.is_dir():
            return []
        out: List[str] = []
        for p in base.rglob("*"):
            if len(out) >= self._walk_max_files:
                break
            rel = p.relative_to(base)
            if any(part in _SKIP_DIRS for part in rel.parts):
                continue
            if not p.is_file():
                continue
            out.append(rel.as_posix())
        return out


def _split_lines(stdout: str) -> List[str]:
    return [line.strip() for line in stdout.split("\n") if line.strip()]
