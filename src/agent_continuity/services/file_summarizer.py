from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

from agent_continuity.domain.contracts import ContinuityStore
from agent_continuity.services.best_effort import best_effort
from agent_continuity.services.cache_tier import CacheTier
from agent_continuity.util import first_non_blank_line, sha256_hex

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_BYTES = 180_000
DEFAULT_MAX_SUMMARY_LINES = 12
FIRST_LINE_MAX_CHARS = 120
SYMBOLS_MAX_CHARS = 900

_SYMBOL_LINE_RE = re.compile(
    r"^(export\s+|module\.exports|class\s+\w+|function\s+\w+|interface\s+\w+|type\s+\w+"
    r"|def\s+\w+|async\s+def\s+\w+|func\s+\w+|pub\s+(fn|struct|enum|trait)\s+\w+)"
)


def build_file_summary(relative_path: str, content: str, max_symbol_lines: int = DEFAULT_MAX_SUMMARY_LINES) -> str:
    lines = content.split("\n")
    symbols: List[str] = []
    for line in lines:
        stripped = line.strip()
        if _SYMBOL_LINE_RE.match(stripped):
            symbols.append(stripped)
            if len(symbols) >= max_symbol_lines:
                break

    details = [
        f"file: {relative_path}",
        f"lines: {len(lines)}",
    ]
    first = first_non_blank_line(content)
    if first:
        details.append(f"first_line: {first[:FIRST_LINE_MAX_CHARS]}")
    if symbols:
        details.append(f"symbols: {' | '.join(symbols)[:SYMBOLS_MAX_CHARS]}")
    return "\n".join(details)


class FileSummarizer:
    """Structural one-screen summary per file, keyed by content hash.

    A file edit produces a new key; stale entries are never evicted.
    """

    def __init__(
        self,
        store: Optional[ContinuityStore] = None,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        max_summary_lines: int = DEFAULT_MAX_SUMMARY_LINES,
    ):
        self._store = store
        self._max_file_bytes = max(1, int(max_file_bytes))
        self._max_summary_lines = max(1, int(max_summary_lines))
        self._cache = CacheTier(
            name="file-summary",
            loader=self._load if store is not None else None,
        )

    @property
    def cache(self) -> CacheTier:
        return self._cache

    def read_summary(self, root: str, relative_path: str) -> Optional[str]:
        full_path = Path(root) / relative_path
        try:
            if not full_path.is_file() or full_path.stat().st_size > self._max_file_bytes:
                return None
            content = full_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.debug("summary skipped for %s: %s", relative_path, exc)
            return None

        content_hash = sha256_hex(content)
        key = sha256_hex(f"{root}:{relative_path}:{content_hash}")
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        summary = build_file_summary(relative_path, content, max_symbol_lines=self._max_summary_lines)
        self._cache.put(key, summary)
        if self._store is not None:
            best_effort(
                "file summary cache write",
                lambda: self._store.upsert_file_summary(key, root, relative_path, content_hash, summary),
                None,
            )
        return summary

    def _load(self, key: str) -> Optional[Tuple[str, int]]:
        summary = self._store.get_file_summary(key)
        if not summary:
            return None
        return summary, 0
