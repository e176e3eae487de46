from __future__ import annotations

import posixpath
from typing import List, Optional, Sequence, Tuple

from agent_continuity.domain.continuity import SearchResult
from agent_continuity.domain.contracts import ContinuityStore, FileLister
from agent_continuity.services.best_effort import best_effort, best_effort_async
from agent_continuity.services.cache_tier import CacheTier, now_ms

PATH_MATCH_SCORE = 3
BASENAME_MATCH_SCORE = 4
DEFAULT_SEARCH_TTL_MS = 60_000
DEFAULT_MAX_RESULTS = 24


class RelevanceSearch:
    """Keyword-driven ranking over the repository file list.

    Results are cached for ``ttl_ms`` under ``root:head:keywords``, first
    in-process and then in the durable search table.
    """

    def __init__(
        self,
        lister: FileLister,
        store: Optional[ContinuityStore] = None,
        ttl_ms: int = DEFAULT_SEARCH_TTL_MS,
        max_results: int = DEFAULT_MAX_RESULTS,
        clock=now_ms,
    ):
        self._lister = lister
        self._store = store
        self._max_results = max(1, int(max_results))
        self._clock = clock
        self._cache = CacheTier(
            name="search",
            loader=self._load if store is not None else None,
            ttl_ms=ttl_ms,
            clock=clock,
        )

    @property
    def cache(self) -> CacheTier:
        return self._cache

    async def search_relevant_files(self, root: str, keywords: Sequence[str], head_revision: str) -> List[str]:
        if not keywords:
            return []
        query = ",".join(keywords)
        key = f"{root}:{head_revision}:{query}"
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        files = await best_effort_async("file listing", lambda: self._lister.list_files(root), [])
        ranked = score_paths(files, keywords, limit=self._max_results)
        result = SearchResult(files=tuple(ranked), timestamp_ms=self._clock())
        self._cache.put(key, result.files, stored_at_ms=result.timestamp_ms)
        if self._store is not None:
            best_effort(
                "search cache write",
                lambda: self._store.upsert_search(key, root, query, head_revision, result),
                None,
            )
        return ranked

    def _load(self, key: str) -> Optional[Tuple[Tuple[str, ...], int]]:
        found = self._store.get_search(key)
        if found is None:
            return None
        return found.files, found.timestamp_ms


def score_paths(files: Sequence[str], keywords: Sequence[str], limit: int = DEFAULT_MAX_RESULTS) -> List[str]:
    """Rank paths by keyword hits; basename hits outrank directory hits.

    Each keyword adds 3 when it appears anywhere in the lowercased path and
    4 more when it appears in the basename.  Ties keep listing order.
    """
    scored: List[Tuple[int, int, str]] = []
    for idx, file_path in enumerate(files):
        lower = file_path.lower()
        base = posixpath.basename(lower.replace("\\", "/"))
        score = 0
        for keyword in keywords:
            if keyword in lower:
                score += PATH_MATCH_SCORE
            if keyword in base:
                score += BASENAME_MATCH_SCORE
        if score > 0:
            scored.append((score, idx, file_path))
    scored.sort(key=lambda x: (-x[0], x[1]))
    return [path for _, _, path in scored[: max(1, limit)]]
