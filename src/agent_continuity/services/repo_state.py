from __future__ import annotations

import asyncio
import logging
from typing import List

from agent_continuity.domain.continuity import DiffStats, RepoState
from agent_continuity.domain.contracts import GitBinding
from agent_continuity.util import sha256_hex

logger = logging.getLogger(__name__)

DIFF_TIMEOUT_SEC = 7.0
DIFF_MAX_BUFFER_BYTES = 1024 * 1024


class RepoStateReader:
    """Cheap working-tree snapshot plus the heavier numstat diff size.

    Neither call caches: the pack and search cache keys built from the
    result are the caching mechanism.  Neither call raises.
    """

    def __init__(self, git: GitBinding):
        self._git = git

    async def get_repo_state(self, root: str) -> RepoState:
        try:
            head, paths = await asyncio.gather(
                self._git.head_revision(root),
                self._git.changed_paths(root),
            )
        except Exception as exc:
            logger.debug("repo state unavailable for %s: %s", root, exc)
            return RepoState.no_git()
        changed = tuple(sorted(set(paths)))
        return RepoState(
            head_revision=str(head).strip(),
            changed_files=changed,
            changed_files_hash=sha256_hex("\n".join(changed)),
        )

    async def get_diff_stats(self, root: str) -> DiffStats:
        try:
            out = await self._git.raw_command(
                root,
                ["diff", "--numstat"],
                timeout_sec=DIFF_TIMEOUT_SEC,
                max_buffer_bytes=DIFF_MAX_BUFFER_BYTES,
            )
        except Exception as exc:
            logger.debug("diff stats unavailable for %s: %s", root, exc)
            return DiffStats(total_lines=0)
        return DiffStats(total_lines=parse_numstat(out))


def parse_numstat(output: str) -> int:
    """Sum added + removed lines; binary entries (``-``) count as zero."""
    total = 0
    for line in output.split("\n"):
        line = line.strip()
        if not line:
            continue
        parts: List[str] = line.split("\t")
        for raw in parts[:2]:
            try:
                total += int(raw)
            except ValueError:
                continue
    return total
