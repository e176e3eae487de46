from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from agent_continuity.config import PackBudgets
from agent_continuity.domain.continuity import ConversationContinuityState, PackCacheEntry, RepoState
from agent_continuity.domain.contracts import ContinuityStore
from agent_continuity.services.best_effort import best_effort
from agent_continuity.services.cache_tier import CacheTier
from agent_continuity.services.file_summarizer import FileSummarizer
from agent_continuity.services.relevance_search import RelevanceSearch
from agent_continuity.util import DEFAULT_STOPWORDS, clamp_by_bytes, extract_keywords

logger = logging.getLogger(__name__)

ANCHOR_LABEL = "[CONTINUITY_ANCHOR]"
CONTEXT_LABEL = "[CONTINUITY_CONTEXT]"
DELTA_LABEL = "[CONTINUITY_DELTA]"
REQUEST_LABEL = "[USER_REQUEST]"

NO_ANCHOR_TEXT = "No anchor files found."
NO_CONTEXT_TEXT = "No relevant files identified."
SUMMARY_SEPARATOR = "\n\n---\n\n"
DELTA_FILES_SHOWN = 20


def pack_cache_key(
    task_fingerprint: str,
    repo_state: RepoState,
    provider: str,
    mode: str,
    budget_bytes: int,
) -> str:
    return ":".join([
        task_fingerprint,
        repo_state.changed_files_hash,
        repo_state.head_revision,
        provider,
        mode,
        str(budget_bytes),
    ])


def compose_pack(anchor: str, context: str, delta: str, budget_bytes: int) -> str:
    composite = "\n".join([
        ANCHOR_LABEL,
        anchor,
        "",
        CONTEXT_LABEL,
        context,
        "",
        DELTA_LABEL,
        delta,
        "",
        REQUEST_LABEL,
    ])
    return clamp_by_bytes(composite, budget_bytes)


def build_delta_pack(previous: Optional[ConversationContinuityState], repo_state: RepoState) -> str:
    shown = ", ".join(repo_state.changed_files[:DELTA_FILES_SHOWN]) or "none"
    if previous is None:
        return f"first_run: true\nchanged_files: {shown}"
    if previous.last_changed_files_hash == repo_state.changed_files_hash:
        return "repo_delta: unchanged"
    return f"repo_delta: changed\nchanged_files: {shown}"


class ContextPackAssembler:
    """Builds the anchor / context / delta pack and owns the pack cache."""

    def __init__(
        self,
        search: RelevanceSearch,
        summarizer: FileSummarizer,
        store: Optional[ContinuityStore] = None,
        budgets: Optional[PackBudgets] = None,
        anchor_files: Sequence[str] = ("AGENTS.md", "CLAUDE.md", "README.md"),
        stopwords=DEFAULT_STOPWORDS,
    ):
        self._search = search
        self._summarizer = summarizer
        self._store = store
        self._budgets = budgets or PackBudgets()
        self._anchor_files = tuple(anchor_files)
        self._stopwords = stopwords
        self._cache = CacheTier(
            name="pack",
            loader=self._load if store is not None else None,
        )

    @property
    def cache(self) -> CacheTier:
        return self._cache

    def get_cached_pack(self, key: str) -> Optional[str]:
        return self._cache.get(key)

    def store_pack(self, entry: PackCacheEntry) -> None:
        self._cache.put(entry.key, entry.pack)
        if self._store is not None:
            best_effort("pack cache write", lambda: self._store.upsert_pack(entry), None)

    async def build_pack(
        self,
        root: str,
        repo_state: RepoState,
        prompt: str,
        previous: Optional[ConversationContinuityState],
        budget_bytes: int,
    ) -> str:
        anchor = self.build_anchor_pack(root)
        context = await self.build_context_pack(root, repo_state, prompt)
        delta = build_delta_pack(previous, repo_state)
        return compose_pack(anchor, context, delta, budget_bytes)

    def build_anchor_pack(self, root: str) -> str:
        parts: List[str] = []
        for relative_path in self._anchor_files:
            try:
                content = (Path(root) / relative_path).read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            parts.append(f"## {relative_path}\n{clamp_by_bytes(content, self._budgets.anchor_file_bytes)}")
        if not parts:
            return NO_ANCHOR_TEXT
        return "\n\n".join(parts)

    async def build_context_pack(self, root: str, repo_state: RepoState, prompt: str) -> str:
        keywords = extract_keywords(prompt, stopwords=self._stopwords)
        hits = await self._search.search_relevant_files(root, keywords, repo_state.head_revision)
        candidates = [*repo_state.changed_files[: self._budgets.max_changed_in_context], *hits]
        unique: List[str] = []
        for path in candidates:
            if path not in unique:
                unique.append(path)
            if len(unique) >= self._budgets.max_context_files:
                break
        if not unique:
            return NO_CONTEXT_TEXT

        summaries = [s for s in (self._summarizer.read_summary(root, p) for p in unique) if s]
        if not summaries:
            return NO_CONTEXT_TEXT
        return SUMMARY_SEPARATOR.join(summaries)

    def _load(self, key: str) -> Optional[Tuple[str, int]]:
        pack = self._store.get_pack(key)
        if not pack:
            return None
        return pack, 0
