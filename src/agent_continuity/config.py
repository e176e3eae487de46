import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Tuple

from agent_continuity.domain.continuity import (
    ARTIFACT_POLICIES,
    ARTIFACT_POLICY_MANUAL_COMMIT,
    CONTINUITY_MODE_ACTIVE,
    CONTINUITY_MODE_OFF,
    CONTINUITY_MODES,
    DEFAULT_MEMORY_BRANCH,
)
from agent_continuity.util import DEFAULT_STOPWORDS

MODE_KEY = "CONTINUITY_MODE"
LEGACY_ENABLED_KEY = "CONTINUITY_ENABLED"
ENABLE_SNAPSHOT_KEY = "CONTINUITY_ENABLE_SNAPSHOT"
ENABLE_REHYDRATE_KEY = "CONTINUITY_ENABLE_REHYDRATE"
ARTIFACT_POLICY_KEY = "CONTINUITY_ARTIFACT_POLICY"
MEMORY_BRANCH_KEY = "CONTINUITY_MEMORY_BRANCH"
BUDGET_BYTES_KEY = "CONTINUITY_BUDGET_BYTES"
STATE_DB_KEY = "CONTINUITY_STATE_DB"

_MINUTE_MS = 60 * 1000

DEFAULT_BOUNDARY_PREFIXES = (
    "src/main/lib/trpc/",
    "src/main/lib/db/",
    "src/main/lib/continuity/",
    "src/main/lib/plugins/",
    "src/main/lib/mcp-",
    "src/main/lib/oauth",
    "src/main/lib/git/",
)

ANCHOR_FILES = ("AGENTS.md", "CLAUDE.md", "README.md")


@dataclass(frozen=True)
class GovernorThresholds:
    snapshot_turns: int = 7
    rehydrate_turns: int = 12
    snapshot_bytes: int = 90_000
    rehydrate_bytes: int = 150_000
    snapshot_files: int = 10
    rehydrate_files: int = 18
    snapshot_diff_lines: int = 160
    rehydrate_diff_lines: int = 280
    snapshot_elapsed_ms: int = 25 * _MINUTE_MS
    rehydrate_elapsed_ms: int = 50 * _MINUTE_MS
    devlog_diff_lines: int = 120
    devlog_files: int = 6


@dataclass(frozen=True)
class PackBudgets:
    budget_bytes: int = 24_000
    anchor_file_bytes: int = 3_000
    max_file_read_bytes: int = 180_000
    max_summary_lines: int = 12
    max_context_files: int = 8
    max_changed_in_context: int = 4
    search_ttl_ms: int = 60_000
    max_search_results: int = 24


@dataclass(frozen=True)
class ContinuityConfig:
    mode: str = CONTINUITY_MODE_OFF
    snapshot_enabled: bool = True
    # Staged rollout: rehydrate stays off unless explicitly enabled.
    rehydrate_enabled: bool = False
    default_artifact_policy: str = ARTIFACT_POLICY_MANUAL_COMMIT
    default_memory_branch: str = DEFAULT_MEMORY_BRANCH
    thresholds: GovernorThresholds = field(default_factory=GovernorThresholds)
    budgets: PackBudgets = field(default_factory=PackBudgets)
    stopwords: frozenset = DEFAULT_STOPWORDS
    boundary_prefixes: Tuple[str, ...] = DEFAULT_BOUNDARY_PREFIXES
    anchor_files: Tuple[str, ...] = ANCHOR_FILES

    @property
    def enabled(self) -> bool:
        return self.mode != CONTINUITY_MODE_OFF

    def with_mode(self, mode: str) -> "ContinuityConfig":
        return replace(self, mode=parse_mode(mode, legacy_enabled=None))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ContinuityConfig":
        env = os.environ if environ is None else environ
        budgets = PackBudgets()
        budget_override = _read_int(env, BUDGET_BYTES_KEY, budgets.budget_bytes)
        if budget_override != budgets.budget_bytes:
            budgets = replace(budgets, budget_bytes=budget_override)
        return cls(
            mode=parse_mode(env.get(MODE_KEY), legacy_enabled=env.get(LEGACY_ENABLED_KEY)),
            snapshot_enabled=(env.get(ENABLE_SNAPSHOT_KEY) or "").strip() != "0",
            rehydrate_enabled=(env.get(ENABLE_REHYDRATE_KEY) or "").strip() == "1",
            default_artifact_policy=parse_artifact_policy(env.get(ARTIFACT_POLICY_KEY)),
            default_memory_branch=(env.get(MEMORY_BRANCH_KEY) or "").strip() or DEFAULT_MEMORY_BRANCH,
            budgets=budgets,
        )


def parse_mode(raw: Optional[str], legacy_enabled: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    if value in CONTINUITY_MODES:
        return value
    # Backward compatibility for the older boolean flag.
    return CONTINUITY_MODE_ACTIVE if (legacy_enabled or "").strip() == "1" else CONTINUITY_MODE_OFF


def parse_artifact_policy(raw: Optional[str]) -> str:
    policy = (raw or "").strip()
    return policy if policy in ARTIFACT_POLICIES else ARTIFACT_POLICY_MANUAL_COMMIT


def _read_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(1, value)
