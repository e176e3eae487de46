"""Continuity engine facade.

``apply`` runs before a prompt is sent to the model and optionally
prefixes it with a context pack; ``record_run_outcome`` runs after the
model answered and drives the governor.  Neither raises into the caller:
the worst case is the bare prompt and an ``ok`` decision.

Usage::

    service = build_continuity_service(state_db_path=path)
    out = await service.apply(ContinuityInput(conversation_id="c1", cwd=repo, prompt=text))
    ...
    decision = await service.record_run_outcome(RunOutcomeInput(...))
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from agent_continuity.config import ContinuityConfig
from agent_continuity.domain.continuity import (
    ARTIFACT_TYPE_ADR,
    ARTIFACT_TYPE_DEVLOG,
    ARTIFACT_TYPE_REJECTED_APPROACH,
    CONTINUITY_MODE_ACTIVE,
    CONTINUITY_MODE_PASSIVE,
    GOVERNOR_ACTION_OK,
    GOVERNOR_ACTION_REHYDRATE,
    AutoCommitPolicy,
    ConversationContinuityState,
    ContinuityArtifact,
    ContinuityInput,
    ContinuityOutput,
    GovernorDecision,
    GovernorSignals,
    MeaningfulEvents,
    PackCacheEntry,
    RepoState,
    RunOutcomeInput,
    SafeguardSettings,
)
from agent_continuity.domain.contracts import ContinuityStore, ConversationStore, FileLister, GitBinding
from agent_continuity.events.event_bus import TelemetryBus
from agent_continuity.execution.file_lister import RipgrepFileLister
from agent_continuity.observability.structured_log import log_json
from agent_continuity.services.artifact_writer import ArtifactWriter
from agent_continuity.services.best_effort import best_effort
from agent_continuity.services.context_pack import ContextPackAssembler, pack_cache_key
from agent_continuity.services.file_summarizer import FileSummarizer
from agent_continuity.services.governor import apply_capabilities, decide_governor, detect_meaningful_events
from agent_continuity.services.rehydrate import Rehydrator
from agent_continuity.services.relevance_search import RelevanceSearch
from agent_continuity.services.repo_state import RepoStateReader
from agent_continuity.services.safeguards import SafeguardPolicy, SafeguardSettingsUpdate
from agent_continuity.util import byte_length, clamp_by_bytes, normalize_prompt, sha256_hex

logger = logging.getLogger(__name__)

ConfigSource = Union[ContinuityConfig, Callable[[], ContinuityConfig]]

_PROMPT_EXCERPT_BYTES = 900
_DEVLOG_RESPONSE_BYTES = 1500
_REJECTED_RESPONSE_BYTES = 1200
_DEVLOG_FILES_SHOWN = 24
_INTERVENTION_FILES_SHOWN = 20
_ADR_FILES_SHOWN = 12


class ContinuityService:
    def __init__(
        self,
        store: ContinuityStore,
        conversations: ConversationStore,
        git: GitBinding,
        lister: Optional[FileLister] = None,
        config: Optional[ConfigSource] = None,
        telemetry: Optional[TelemetryBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config_source: ConfigSource = config if config is not None else ContinuityConfig()
        initial = self._current_config()
        self._store = store
        self._telemetry = telemetry if telemetry is not None else TelemetryBus()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._repo = RepoStateReader(git)
        self._search = RelevanceSearch(
            lister=lister if lister is not None else RipgrepFileLister(git=git),
            store=store,
            ttl_ms=initial.budgets.search_ttl_ms,
            max_results=initial.budgets.max_search_results,
        )
        self._summarizer = FileSummarizer(
            store=store,
            max_file_bytes=initial.budgets.max_file_read_bytes,
            max_summary_lines=initial.budgets.max_summary_lines,
        )
        self._assembler = ContextPackAssembler(
            search=self._search,
            summarizer=self._summarizer,
            store=store,
            budgets=initial.budgets,
            anchor_files=initial.anchor_files,
            stopwords=initial.stopwords,
        )
        self._artifacts = ArtifactWriter(store)
        self._rehydrator = Rehydrator(store, conversations)
        self._safeguards = SafeguardPolicy(
            store,
            git,
            SafeguardSettings(
                artifact_policy=initial.default_artifact_policy,
                auto_commit_to_memory_branch=False,
                memory_branch=initial.default_memory_branch,
            ),
        )
        self._states: Dict[str, ConversationContinuityState] = {}

    @property
    def telemetry(self) -> TelemetryBus:
        return self._telemetry

    @property
    def assembler(self) -> ContextPackAssembler:
        return self._assembler

    # ------------------------------------------------------------------
    # Pack assembly
    # ------------------------------------------------------------------

    async def apply(self, turn: ContinuityInput) -> ContinuityOutput:
        config = self._current_config()
        if not config.enabled:
            return ContinuityOutput(prompt=turn.prompt, cache_hit=False)
        try:
            return await self._apply(turn, config)
        except Exception:
            logger.exception("continuity: apply failed conversation=%s", turn.conversation_id)
            return ContinuityOutput(prompt=turn.prompt, cache_hit=False)

    async def _apply(self, turn: ContinuityInput, config: ContinuityConfig) -> ContinuityOutput:
        root = turn.repo_root
        passive = config.mode == CONTINUITY_MODE_PASSIVE
        budget = config.budgets.budget_bytes
        task_fingerprint = sha256_hex(normalize_prompt(turn.prompt))
        repo_state = await self._repo.get_repo_state(root)
        key = pack_cache_key(task_fingerprint, repo_state, turn.provider, turn.mode, budget)

        pack = self._assembler.get_cached_pack(key)
        cache_hit = pack is not None
        if pack is None:
            previous = self._load_state(turn.conversation_id)
            pack = await self._assembler.build_pack(root, repo_state, turn.prompt, previous, budget)
            self._assembler.store_pack(
                PackCacheEntry(
                    key=key,
                    task_fingerprint=task_fingerprint,
                    changed_files_hash=repo_state.changed_files_hash,
                    head_revision=repo_state.head_revision,
                    provider=turn.provider,
                    mode=turn.mode,
                    budget_bytes=budget,
                    pack=pack,
                )
            )

        pack_bytes = byte_length(pack)
        injected = 0 if passive else pack_bytes
        self._record_pack_applied(turn.conversation_id, repo_state.changed_files_hash, injected)
        self._telemetry.track_pack_metrics(
            provider=turn.provider,
            mode=turn.mode,
            cache_hit=cache_hit,
            pack_bytes=pack_bytes,
            injected_bytes=injected,
        )
        log_json(
            logger,
            "continuity.pack.hit" if cache_hit else "continuity.pack.built",
            conversation_id=turn.conversation_id,
            continuity_mode=config.mode,
            head=repo_state.head_revision,
            changed_files=len(repo_state.changed_files),
            pack_bytes=pack_bytes,
        )
        if passive:
            return ContinuityOutput(prompt=turn.prompt, cache_hit=cache_hit)
        return ContinuityOutput(prompt=f"{pack}\n\n{turn.prompt}", cache_hit=cache_hit)

    # ------------------------------------------------------------------
    # Governor
    # ------------------------------------------------------------------

    async def record_run_outcome(self, outcome: RunOutcomeInput) -> GovernorDecision:
        config = self._current_config()
        if not config.enabled:
            return GovernorDecision(action=GOVERNOR_ACTION_OK, reasons=[])
        try:
            return await self._record_run_outcome(outcome, config)
        except Exception:
            logger.exception("continuity: run outcome failed conversation=%s", outcome.conversation_id)
            return GovernorDecision(action=GOVERNOR_ACTION_OK, reasons=[])

    async def _record_run_outcome(self, outcome: RunOutcomeInput, config: ContinuityConfig) -> GovernorDecision:
        root = outcome.repo_root
        active = config.mode == CONTINUITY_MODE_ACTIVE
        repo_state, diff_stats = await asyncio.gather(
            self._repo.get_repo_state(root),
            self._repo.get_diff_stats(root),
        )
        current = self._load_state(outcome.conversation_id) or ConversationContinuityState(
            conversation_id=outcome.conversation_id
        )
        injected = outcome.injected_bytes if outcome.injected_bytes is not None else current.last_injected_bytes
        next_turns = current.turns_since_reset + 1
        next_bytes = current.total_injected_bytes + max(int(injected or 0), 0)
        now = self._clock()

        settings: Optional[SafeguardSettings] = None
        policy: Optional[AutoCommitPolicy] = None
        if active:
            settings = self._safeguards.get_settings()
            policy = await self._safeguards.assess_auto_commit_policy(root, settings)

        thresholds = config.thresholds
        if current.last_reset_at is not None:
            elapsed_ms = int((now - current.last_reset_at).total_seconds() * 1000)
        else:
            # Never reset: treat as long overdue.
            elapsed_ms = thresholds.rehydrate_elapsed_ms + 1
        decision = decide_governor(
            GovernorSignals(
                turns_since_reset=next_turns,
                total_injected_bytes=next_bytes,
                changed_files_count=len(repo_state.changed_files),
                diff_lines=diff_stats.total_lines,
                elapsed_since_reset_ms=elapsed_ms,
            ),
            thresholds,
        )
        action = apply_capabilities(decision.action, config.snapshot_enabled, config.rehydrate_enabled)
        events = detect_meaningful_events(
            repo_state,
            diff_stats.total_lines,
            outcome.assistant_response,
            outcome.was_error,
            thresholds,
            config.boundary_prefixes,
        )

        if active and settings is not None and policy is not None:
            self._write_event_artifacts(outcome, repo_state, diff_stats.total_lines, events, settings, policy)

        reset = action != GOVERNOR_ACTION_OK
        self._save_state(
            ConversationContinuityState(
                conversation_id=outcome.conversation_id,
                last_changed_files_hash=repo_state.changed_files_hash,
                turns_since_reset=0 if reset else next_turns,
                total_injected_bytes=0 if reset else next_bytes,
                last_injected_bytes=current.last_injected_bytes,
                last_reset_at=now if reset else current.last_reset_at,
            )
        )

        if active and reset and settings is not None and policy is not None:
            self._artifacts.write_artifact_if_new(
                outcome.conversation_id,
                ARTIFACT_TYPE_DEVLOG,
                f"{outcome.conversation_id}:{int(now.timestamp() * 1000)}:{action}",
                "\n".join([
                    f"governor_action: {action}",
                    f"reasons: {'; '.join(decision.reasons)}",
                    f"changed_files: {_join_files(repo_state.changed_files, _INTERVENTION_FILES_SHOWN)}",
                    f"diff_lines: {diff_stats.total_lines}",
                    f"artifact_policy: {settings.artifact_policy}",
                    f"auto_commit_eligible: {_flag(policy.allowed)}",
                ]),
            )

        self._telemetry.track_governor_action(
            provider=outcome.provider,
            mode=outcome.mode,
            action=action,
            reasons_count=len(decision.reasons),
        )
        log_json(
            logger,
            "continuity.governor.decision",
            conversation_id=outcome.conversation_id,
            scored_action=decision.action,
            action=action,
            reasons=decision.reasons,
            turns=next_turns,
            injected_bytes=next_bytes,
            diff_lines=diff_stats.total_lines,
        )

        if active and policy is not None and settings is not None and policy.requested:
            self._telemetry.track_safeguard(
                action="auto-commit-allowed" if policy.allowed else "auto-commit-blocked",
                branch=policy.current_branch,
                memory_branch=settings.memory_branch,
            )
            log_json(
                logger,
                "continuity.safeguard",
                allowed=policy.allowed,
                branch=policy.current_branch,
                memory_branch=settings.memory_branch,
            )
            if not policy.allowed:
                self._artifacts.write_artifact_if_new(
                    outcome.conversation_id,
                    ARTIFACT_TYPE_DEVLOG,
                    f"{repo_state.head_revision}:auto-commit-blocked:{policy.current_branch}",
                    "\n".join([
                        "safeguard: auto commit blocked",
                        f"current_branch: {policy.current_branch}",
                        f"required_memory_branch: {settings.memory_branch}",
                        "policy: feature branches are protected from automatic continuity commits",
                    ]),
                )

        if active and action == GOVERNOR_ACTION_REHYDRATE:
            self._rehydrator.execute(outcome.conversation_id, outcome.prompt, decision.reasons)

        return GovernorDecision(action=action, reasons=list(decision.reasons))

    def _write_event_artifacts(
        self,
        outcome: RunOutcomeInput,
        repo_state: RepoState,
        diff_lines: int,
        events: MeaningfulEvents,
        settings: SafeguardSettings,
        policy: AutoCommitPolicy,
    ) -> None:
        prompt_excerpt = clamp_by_bytes(outcome.prompt, _PROMPT_EXCERPT_BYTES)
        if events.devlog:
            self._artifacts.write_artifact_if_new(
                outcome.conversation_id,
                ARTIFACT_TYPE_DEVLOG,
                events.event_fingerprint,
                "\n".join([
                    f"provider: {outcome.provider}",
                    f"mode: {outcome.mode}",
                    f"commit: {repo_state.head_revision}",
                    f"changed_files: {_join_files(repo_state.changed_files, _DEVLOG_FILES_SHOWN)}",
                    f"diff_lines: {diff_lines}",
                    f"signals: {'; '.join(events.reasons)}",
                    f"artifact_policy: {settings.artifact_policy}",
                    f"memory_branch: {settings.memory_branch}",
                    f"auto_commit_eligible: {_flag(policy.allowed)}",
                    "",
                    f"prompt: {prompt_excerpt}",
                    "",
                    f"assistant_summary: {clamp_by_bytes(outcome.assistant_response, _DEVLOG_RESPONSE_BYTES)}",
                ]),
            )
        if events.adr:
            self._artifacts.write_artifact_if_new(
                outcome.conversation_id,
                ARTIFACT_TYPE_ADR,
                f"{events.event_fingerprint}:adr",
                "\n".join([
                    "status: draft",
                    f"context: boundary module touch detected ({', '.join(events.boundary_files[:_ADR_FILES_SHOWN])})",
                    "decision: TBD",
                    "consequences: TBD",
                    "",
                    f"prompt: {prompt_excerpt}",
                ]),
            )
        if events.rejected_approach:
            self._artifacts.write_artifact_if_new(
                outcome.conversation_id,
                ARTIFACT_TYPE_REJECTED_APPROACH,
                f"{events.event_fingerprint}:rejected",
                "\n".join([
                    f"reason: {events.rejected_reason}",
                    f"prompt: {prompt_excerpt}",
                    f"assistant_summary: {clamp_by_bytes(outcome.assistant_response, _REJECTED_RESPONSE_BYTES)}",
                ]),
            )

    # ------------------------------------------------------------------
    # Settings and inspection
    # ------------------------------------------------------------------

    def get_safeguard_settings(self) -> SafeguardSettings:
        return self._safeguards.get_settings()

    def update_safeguard_settings(
        self, update: Union[SafeguardSettingsUpdate, Mapping[str, Any]]
    ) -> SafeguardSettings:
        if not isinstance(update, SafeguardSettingsUpdate):
            update = SafeguardSettingsUpdate.model_validate(dict(update))
        return self._safeguards.update_settings(update)

    def get_state(self, conversation_id: str) -> Optional[ConversationContinuityState]:
        return self._load_state(conversation_id)

    def list_artifacts(
        self,
        conversation_id: str,
        artifact_type: Optional[str] = None,
        limit: int = 20,
    ) -> List[ContinuityArtifact]:
        return best_effort(
            "artifact listing",
            lambda: self._store.list_artifacts(conversation_id, artifact_type=artifact_type, limit=limit),
            [],
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _current_config(self) -> ContinuityConfig:
        source = self._config_source
        if isinstance(source, ContinuityConfig):
            return source
        return source()

    def _load_state(self, conversation_id: str) -> Optional[ConversationContinuityState]:
        hot = self._states.get(conversation_id)
        if hot is not None:
            return hot
        state = best_effort(
            "continuity state read",
            lambda: self._store.get_continuity_state(conversation_id),
            None,
        )
        if state is not None:
            self._states[conversation_id] = state
        return state

    def _save_state(self, state: ConversationContinuityState) -> None:
        self._states[state.conversation_id] = state
        best_effort("continuity state write", lambda: self._store.upsert_continuity_state(state), None)

    def _record_pack_applied(self, conversation_id: str, changed_files_hash: str, injected_bytes: int) -> None:
        previous = self._states.get(conversation_id)
        if previous is not None:
            self._states[conversation_id] = ConversationContinuityState(
                conversation_id=conversation_id,
                last_changed_files_hash=changed_files_hash,
                turns_since_reset=previous.turns_since_reset,
                total_injected_bytes=previous.total_injected_bytes,
                last_injected_bytes=injected_bytes,
                last_reset_at=previous.last_reset_at,
            )
        else:
            self._states.pop(conversation_id, None)
        best_effort(
            "continuity state write",
            lambda: self._store.record_pack_applied(conversation_id, changed_files_hash, injected_bytes),
            None,
        )


def _join_files(files, limit: int) -> str:
    return ", ".join(list(files)[:limit]) or "none"


def _flag(value: bool) -> str:
    return "true" if value else "false"
