"""Continuity engine domain model.

Plain records shared by the pack assembler, the governor and the
persistence layer.  Everything that is cached or compared is a frozen
dataclass; only the per-conversation counters are mutated (by replacing
the record, never in place).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

# ---------------------------------------------------------------------------
# Modes and kinds
# ---------------------------------------------------------------------------

CONTINUITY_MODE_OFF = "off"
CONTINUITY_MODE_PASSIVE = "passive"     # pack computed and cached, never injected
CONTINUITY_MODE_ACTIVE = "active"

CONTINUITY_MODES = frozenset([
    CONTINUITY_MODE_OFF,
    CONTINUITY_MODE_PASSIVE,
    CONTINUITY_MODE_ACTIVE,
])

CHAT_MODE_AGENT = "agent"

PROVIDER_CLAUDE = "claude"

GOVERNOR_ACTION_OK = "ok"
GOVERNOR_ACTION_SNAPSHOT = "snapshot"
GOVERNOR_ACTION_REHYDRATE = "rehydrate"

GOVERNOR_ACTIONS = (
    GOVERNOR_ACTION_OK,
    GOVERNOR_ACTION_SNAPSHOT,
    GOVERNOR_ACTION_REHYDRATE,
)

ARTIFACT_TYPE_DEVLOG = "devlog"
ARTIFACT_TYPE_ADR = "adr"
ARTIFACT_TYPE_REJECTED_APPROACH = "rejected-approach"

ARTIFACT_TYPES = frozenset([
    ARTIFACT_TYPE_DEVLOG,
    ARTIFACT_TYPE_ADR,
    ARTIFACT_TYPE_REJECTED_APPROACH,
])

ARTIFACT_STATUS_DRAFT = "draft"
ARTIFACT_CREATED_BY = "continuity-service"

ARTIFACT_POLICY_MANUAL_COMMIT = "auto-write-manual-commit"
ARTIFACT_POLICY_MEMORY_BRANCH = "auto-write-memory-branch"

ARTIFACT_POLICIES = frozenset([
    ARTIFACT_POLICY_MANUAL_COMMIT,
    ARTIFACT_POLICY_MEMORY_BRANCH,
])

DEFAULT_MEMORY_BRANCH = "memory/continuity"
SETTINGS_SINGLETON_ID = "singleton"

NO_GIT_HEAD = "no-git"
NO_CHANGES_HASH = "no-changes"
UNKNOWN_BRANCH = "unknown"


# ---------------------------------------------------------------------------
# Repository state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RepoState:
    head_revision: str
    changed_files: Tuple[str, ...]     # sorted, unique
    changed_files_hash: str

    @classmethod
    def no_git(cls) -> "RepoState":
        return cls(head_revision=NO_GIT_HEAD, changed_files=(), changed_files_hash=NO_CHANGES_HASH)


@dataclass(frozen=True)
class DiffStats:
    total_lines: int


# ---------------------------------------------------------------------------
# Cached values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchResult:
    files: Tuple[str, ...]
    timestamp_ms: int


@dataclass(frozen=True)
class PackCacheEntry:
    key: str
    task_fingerprint: str
    changed_files_hash: str
    head_revision: str
    provider: str
    mode: str
    budget_bytes: int
    pack: str


# ---------------------------------------------------------------------------
# Per-conversation state and artifacts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConversationContinuityState:
    conversation_id: str
    last_changed_files_hash: str = ""
    turns_since_reset: int = 0
    total_injected_bytes: int = 0
    last_injected_bytes: int = 0
    last_reset_at: Optional[datetime] = None


@dataclass(frozen=True)
class ContinuityArtifact:
    artifact_id: str
    conversation_id: str
    type: str               # see ARTIFACT_TYPES
    content: str
    status: str
    provenance_json: str    # {"eventFingerprint": ..., "createdBy": ...}
    created_at: datetime


@dataclass(frozen=True)
class SafeguardSettings:
    artifact_policy: str = ARTIFACT_POLICY_MANUAL_COMMIT
    auto_commit_to_memory_branch: bool = False
    memory_branch: str = DEFAULT_MEMORY_BRANCH


@dataclass(frozen=True)
class AutoCommitPolicy:
    requested: bool
    allowed: bool
    current_branch: str


# ---------------------------------------------------------------------------
# Engine inputs / outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContinuityInput:
    conversation_id: str
    cwd: str
    prompt: str
    mode: str = CHAT_MODE_AGENT
    provider: str = PROVIDER_CLAUDE
    project_path: Optional[str] = None

    @property
    def repo_root(self) -> str:
        return self.project_path or self.cwd


@dataclass(frozen=True)
class ContinuityOutput:
    prompt: str
    cache_hit: bool


@dataclass(frozen=True)
class RunOutcomeInput:
    conversation_id: str
    cwd: str
    prompt: str
    assistant_response: str
    mode: str = CHAT_MODE_AGENT
    provider: str = PROVIDER_CLAUDE
    project_path: Optional[str] = None
    injected_bytes: Optional[int] = None    # None = use what apply() injected last
    was_error: bool = False

    @property
    def repo_root(self) -> str:
        return self.project_path or self.cwd


@dataclass(frozen=True)
class GovernorSignals:
    turns_since_reset: int
    total_injected_bytes: int
    changed_files_count: int
    diff_lines: int
    elapsed_since_reset_ms: int


@dataclass(frozen=True)
class GovernorDecision:
    action: str
    reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class MeaningfulEvents:
    devlog: bool
    adr: bool
    rejected_approach: bool
    rejected_reason: str
    reasons: List[str]
    boundary_files: List[str]
    event_fingerprint: str
