from __future__ import annotations

import logging
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

from agent_continuity.domain.continuity import (
    ARTIFACT_POLICY_MEMORY_BRANCH,
    AutoCommitPolicy,
    SafeguardSettings,
    UNKNOWN_BRANCH,
)
from agent_continuity.domain.contracts import ContinuityStore, GitBinding

logger = logging.getLogger(__name__)


class SafeguardSettingsUpdate(BaseModel):
    artifact_policy: Optional[Literal["auto-write-manual-commit", "auto-write-memory-branch"]] = None
    auto_commit_to_memory_branch: Optional[bool] = None
    memory_branch: Optional[str] = None

    @field_validator("memory_branch")
    @classmethod
    def _branch_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("memory_branch must not be blank")
        return value


class SafeguardPolicy:
    """Global artifact policy plus the memory-branch auto-commit guard."""

    def __init__(self, store: ContinuityStore, git: GitBinding, defaults: SafeguardSettings):
        self._store = store
        self._git = git
        self._defaults = defaults

    def get_settings(self) -> SafeguardSettings:
        """Read the singleton row, creating it from defaults on first use."""
        try:
            current = self._store.get_settings()
            if current is not None:
                return current
            return self._store.save_settings(self._defaults)
        except Exception as exc:
            logger.warning("continuity: safeguard settings unavailable, using defaults: %s", exc)
            return self._defaults

    def update_settings(self, update: SafeguardSettingsUpdate) -> SafeguardSettings:
        current = self.get_settings()
        branch = (update.memory_branch if update.memory_branch is not None else current.memory_branch).strip()
        merged = SafeguardSettings(
            artifact_policy=update.artifact_policy or current.artifact_policy,
            auto_commit_to_memory_branch=(
                update.auto_commit_to_memory_branch
                if update.auto_commit_to_memory_branch is not None
                else current.auto_commit_to_memory_branch
            ),
            memory_branch=branch or self._defaults.memory_branch,
        )
        return self._store.save_settings(merged)

    async def assess_auto_commit_policy(self, root: str, settings: SafeguardSettings) -> AutoCommitPolicy:
        requested = (
            settings.artifact_policy == ARTIFACT_POLICY_MEMORY_BRANCH
            and settings.auto_commit_to_memory_branch
        )
        try:
            current_branch = (await self._git.current_branch(root)).strip() or UNKNOWN_BRANCH
        except Exception as exc:
            logger.debug("branch detection failed for %s: %s", root, exc)
            current_branch = UNKNOWN_BRANCH
        if not requested:
            return AutoCommitPolicy(requested=False, allowed=False, current_branch=current_branch)
        # Hard guard: automatic commits only ever target the memory branch.
        allowed = current_branch != UNKNOWN_BRANCH and current_branch == settings.memory_branch
        return AutoCommitPolicy(requested=True, allowed=allowed, current_branch=current_branch)
