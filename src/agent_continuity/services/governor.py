"""Context-pressure governor.

Five pressure signals (turns, injected bytes, changed files, diff lines,
time since the last reset) are each checked against a soft and a hard
threshold.  Two or more hard signals ask for a rehydrate, two or more
soft signals ask for a snapshot; a single noisy dimension never escalates
on its own.

Meaningful-event detection is independent of pressure scoring and decides
which durable artifacts a turn deserves.
"""
from __future__ import annotations

from typing import List, Sequence

from agent_continuity.config import GovernorThresholds
from agent_continuity.domain.continuity import (
    GOVERNOR_ACTION_OK,
    GOVERNOR_ACTION_REHYDRATE,
    GOVERNOR_ACTION_SNAPSHOT,
    GOVERNOR_ACTIONS,
    GovernorDecision,
    GovernorSignals,
    MeaningfulEvents,
    RepoState,
)
from agent_continuity.util import sha256_hex

RESPONSE_FINGERPRINT_CHARS = 160

_PIVOT_MARKERS = (
    "instead",
    "alternative approach",
    "pivot",
)


def action_severity(action: str) -> int:
    """ok < snapshot < rehydrate."""
    return GOVERNOR_ACTIONS.index(action)


def decide_governor(signals: GovernorSignals, thresholds: GovernorThresholds) -> GovernorDecision:
    soft: List[str] = []
    hard: List[str] = []

    if signals.turns_since_reset >= thresholds.snapshot_turns:
        soft.append("turn-pressure")
    if signals.total_injected_bytes >= thresholds.snapshot_bytes:
        soft.append("context-pressure")
    if signals.changed_files_count >= thresholds.snapshot_files:
        soft.append("scope-pressure")
    if signals.diff_lines >= thresholds.snapshot_diff_lines:
        soft.append("diff-pressure")
    if signals.elapsed_since_reset_ms >= thresholds.snapshot_elapsed_ms:
        soft.append("time-pressure")

    if signals.turns_since_reset >= thresholds.rehydrate_turns:
        hard.append("turn-pressure-high")
    if signals.total_injected_bytes >= thresholds.rehydrate_bytes:
        hard.append("context-pressure-high")
    if signals.changed_files_count >= thresholds.rehydrate_files:
        hard.append("scope-pressure-high")
    if signals.diff_lines >= thresholds.rehydrate_diff_lines:
        hard.append("diff-pressure-high")
    if signals.elapsed_since_reset_ms >= thresholds.rehydrate_elapsed_ms:
        hard.append("time-pressure-high")

    if len(hard) >= 2:
        return GovernorDecision(action=GOVERNOR_ACTION_REHYDRATE, reasons=hard)
    if len(soft) >= 2:
        return GovernorDecision(action=GOVERNOR_ACTION_SNAPSHOT, reasons=soft)
    return GovernorDecision(action=GOVERNOR_ACTION_OK, reasons=[])


def apply_capabilities(action: str, snapshot_enabled: bool, rehydrate_enabled: bool) -> str:
    """Downgrade ``action`` to what the operator has enabled."""
    if action == GOVERNOR_ACTION_REHYDRATE and not rehydrate_enabled:
        return GOVERNOR_ACTION_SNAPSHOT if snapshot_enabled else GOVERNOR_ACTION_OK
    if action == GOVERNOR_ACTION_SNAPSHOT and not snapshot_enabled:
        return GOVERNOR_ACTION_OK
    return action


def detect_meaningful_events(
    repo_state: RepoState,
    diff_lines: int,
    assistant_response: str,
    was_error: bool,
    thresholds: GovernorThresholds,
    boundary_prefixes: Sequence[str],
) -> MeaningfulEvents:
    reasons: List[str] = []
    if diff_lines >= thresholds.devlog_diff_lines:
        reasons.append(f"diff>{thresholds.devlog_diff_lines}")
    if len(repo_state.changed_files) >= thresholds.devlog_files:
        reasons.append(f"changed_files>{thresholds.devlog_files}")

    response_lower = (assistant_response or "").lower()
    rejected_approach = was_error or any(marker in response_lower for marker in _PIVOT_MARKERS)
    rejected_reason = "run-error" if was_error else "direction-change"

    boundary_files = [
        path for path in repo_state.changed_files
        if any(path.startswith(prefix) for prefix in boundary_prefixes)
    ]
    adr = bool(boundary_files)
    if adr:
        reasons.append("boundary-modules-touched")
    if was_error:
        reasons.append("run-error")

    fingerprint = sha256_hex(
        ":".join([
            repo_state.head_revision,
            repo_state.changed_files_hash,
            str(diff_lines),
            "true" if was_error else "false",
            response_lower[:RESPONSE_FINGERPRINT_CHARS],
        ])
    )
    return MeaningfulEvents(
        devlog=bool(reasons),
        adr=adr,
        rejected_approach=rejected_approach,
        rejected_reason=rejected_reason,
        reasons=reasons,
        boundary_files=boundary_files,
        event_fingerprint=fingerprint,
    )
