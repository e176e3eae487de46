from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from agent_continuity.domain.continuity import (
    ConversationContinuityState,
    ContinuityArtifact,
    PackCacheEntry,
    SafeguardSettings,
    SearchResult,
)
from agent_continuity.domain.conversations import ConversationRecord


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class GitBinding(Protocol):
    async def head_revision(self, root: str) -> str:
        ...

    async def changed_paths(self, root: str) -> List[str]:
        ...

    async def current_branch(self, root: str) -> str:
        ...

    async def raw_command(
        self,
        root: str,
        args: Sequence[str],
        timeout_sec: float = 5.0,
        max_buffer_bytes: int = 1024 * 1024,
    ) -> str:
        ...


class FileLister(Protocol):
    async def list_files(self, root: str) -> List[str]:
        ...


class ContinuityStore(Protocol):
    def get_pack(self, key: str) -> Optional[str]:
        ...

    def upsert_pack(self, entry: PackCacheEntry) -> None:
        ...

    def get_search(self, key: str) -> Optional[SearchResult]:
        ...

    def upsert_search(
        self, key: str, repo_root: str, query: str, head_revision: str, result: SearchResult
    ) -> None:
        ...

    def get_file_summary(self, key: str) -> Optional[str]:
        ...

    def upsert_file_summary(
        self, key: str, repo_root: str, file_path: str, content_hash: str, summary: str
    ) -> None:
        ...

    def get_continuity_state(self, conversation_id: str) -> Optional[ConversationContinuityState]:
        ...

    def upsert_continuity_state(self, state: ConversationContinuityState) -> None:
        ...

    def record_pack_applied(self, conversation_id: str, changed_files_hash: str, injected_bytes: int) -> None:
        ...

    def list_artifacts(
        self, conversation_id: str, artifact_type: Optional[str] = None, limit: int = 12
    ) -> List[ContinuityArtifact]:
        ...

    def insert_artifact(
        self, conversation_id: str, artifact_type: str, content: str, provenance: Dict[str, Any]
    ) -> ContinuityArtifact:
        ...

    def get_settings(self) -> Optional[SafeguardSettings]:
        ...

    def save_settings(self, settings: SafeguardSettings) -> SafeguardSettings:
        ...


class ConversationStore(Protocol):
    def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        ...

    def replace_conversation_messages(self, conversation_id: str, messages: List[Dict[str, Any]]) -> None:
        ...

    def touch_chat(self, chat_id: str, when: Optional[datetime] = None) -> None:
        ...
