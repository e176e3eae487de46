import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent_continuity.domain.continuity import (
    ARTIFACT_POLICY_MEMORY_BRANCH,
    ARTIFACT_POLICY_MANUAL_COMMIT,
    ARTIFACT_STATUS_DRAFT,
    ConversationContinuityState,
    ContinuityArtifact,
    DEFAULT_MEMORY_BRANCH,
    PackCacheEntry,
    SafeguardSettings,
    SearchResult,
    SETTINGS_SINGLETON_ID,
)
from agent_continuity.domain.conversations import ChatRecord, ConversationRecord


class SqliteContinuityStore:
    def __init__(self, db_path: Path):
        self._db_path = Path(db_path).expanduser().resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS continuity_pack_cache (
                    key TEXT PRIMARY KEY,
                    task_fingerprint TEXT NOT NULL,
                    changed_files_hash TEXT NOT NULL,
                    head_commit TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    budget_bytes INTEGER NOT NULL,
                    pack TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS continuity_search_cache (
                    key TEXT PRIMARY KEY,
                    repo_root TEXT NOT NULL,
                    query TEXT NOT NULL,
                    commit_hash TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    result_json TEXT NOT NULL,
                    updated_at_ms INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS continuity_file_cache (
                    key TEXT PRIMARY KEY,
                    repo_root TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS continuity_state (
                    conversation_id TEXT PRIMARY KEY,
                    last_changed_files_hash TEXT NOT NULL DEFAULT '',
                    turns_since_reset INTEGER NOT NULL DEFAULT 0,
                    total_injected_bytes INTEGER NOT NULL DEFAULT 0,
                    last_injected_bytes INTEGER NOT NULL DEFAULT 0,
                    last_reset_at TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS continuity_artifact (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    conversation_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    content TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'draft',
                    provenance_json TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_continuity_artifact_conversation
                ON continuity_artifact (conversation_id, type, seq)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS continuity_settings (
                    id TEXT PRIMARY KEY,
                    artifact_policy TEXT NOT NULL DEFAULT 'auto-write-manual-commit',
                    auto_commit_to_memory_branch INTEGER NOT NULL DEFAULT 0,
                    memory_branch TEXT NOT NULL DEFAULT 'memory/continuity',
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chats (
                    chat_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    conversation_id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    session_id TEXT,
                    stream_id TEXT,
                    messages_json TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    # ------------------------------------------------------------------
    # Pack cache
    # ------------------------------------------------------------------

    def get_pack(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT pack FROM continuity_pack_cache WHERE key = ?", (key,)).fetchone()
        if not row or not row["pack"]:
            return None
        return row["pack"]

    def upsert_pack(self, entry: PackCacheEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_pack_cache
                (key, task_fingerprint, changed_files_hash, head_commit, provider, mode, budget_bytes, pack, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    task_fingerprint = excluded.task_fingerprint,
                    changed_files_hash = excluded.changed_files_hash,
                    head_commit = excluded.head_commit,
                    provider = excluded.provider,
                    mode = excluded.mode,
                    budget_bytes = excluded.budget_bytes,
                    pack = excluded.pack,
                    updated_at = excluded.updated_at
                """,
                (
                    entry.key,
                    entry.task_fingerprint,
                    entry.changed_files_hash,
                    entry.head_revision,
                    entry.provider,
                    entry.mode,
                    int(entry.budget_bytes),
                    entry.pack,
                    _utc_now(),
                ),
            )

    # ------------------------------------------------------------------
    # Search cache
    # ------------------------------------------------------------------

    def get_search(self, key: str) -> Optional[SearchResult]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT result_json, updated_at_ms FROM continuity_search_cache WHERE key = ?",
                (key,),
            ).fetchone()
        if not row or not row["result_json"]:
            return None
        parsed = json.loads(row["result_json"])
        files = parsed.get("files") if isinstance(parsed, dict) else None
        if not isinstance(files, list):
            return None
        return SearchResult(
            files=tuple(f for f in files if isinstance(f, str)),
            timestamp_ms=int(row["updated_at_ms"] or 0),
        )

    def upsert_search(
        self,
        key: str,
        repo_root: str,
        query: str,
        head_revision: str,
        result: SearchResult,
    ) -> None:
        result_json = json.dumps({"files": list(result.files)})
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_search_cache
                (key, repo_root, query, commit_hash, scope, result_json, updated_at_ms)
                VALUES (?, ?, ?, ?, 'repo', ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    repo_root = excluded.repo_root,
                    query = excluded.query,
                    commit_hash = excluded.commit_hash,
                    result_json = excluded.result_json,
                    updated_at_ms = excluded.updated_at_ms
                """,
                (key, repo_root, query, head_revision, result_json, int(result.timestamp_ms)),
            )

    # ------------------------------------------------------------------
    # File summary cache
    # ------------------------------------------------------------------

    def get_file_summary(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT summary FROM continuity_file_cache WHERE key = ?", (key,)).fetchone()
        if not row or not row["summary"]:
            return None
        return row["summary"]

    def upsert_file_summary(
        self,
        key: str,
        repo_root: str,
        file_path: str,
        content_hash: str,
        summary: str,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_file_cache (key, repo_root, file_path, content_hash, summary, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    summary = excluded.summary,
                    content_hash = excluded.content_hash,
                    updated_at = excluded.updated_at
                """,
                (key, repo_root, file_path, content_hash, summary, _utc_now()),
            )

    # ------------------------------------------------------------------
    # Per-conversation state
    # ------------------------------------------------------------------

    def get_continuity_state(self, conversation_id: str) -> Optional[ConversationContinuityState]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM continuity_state WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        if not row:
            return None
        return _row_to_state(row)

    def upsert_continuity_state(self, state: ConversationContinuityState) -> None:
        last_reset = state.last_reset_at.isoformat() if state.last_reset_at else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_state
                (conversation_id, last_changed_files_hash, turns_since_reset, total_injected_bytes,
                 last_injected_bytes, last_reset_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    last_changed_files_hash = excluded.last_changed_files_hash,
                    turns_since_reset = excluded.turns_since_reset,
                    total_injected_bytes = excluded.total_injected_bytes,
                    last_injected_bytes = excluded.last_injected_bytes,
                    last_reset_at = excluded.last_reset_at,
                    updated_at = excluded.updated_at
                """,
                (
                    state.conversation_id,
                    state.last_changed_files_hash,
                    max(0, int(state.turns_since_reset)),
                    max(0, int(state.total_injected_bytes)),
                    max(0, int(state.last_injected_bytes)),
                    last_reset,
                    _utc_now(),
                ),
            )

    def record_pack_applied(self, conversation_id: str, changed_files_hash: str, injected_bytes: int) -> None:
        """Record the repo hash and pack size seen by ``apply`` without touching the counters."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_state
                (conversation_id, last_changed_files_hash, turns_since_reset, total_injected_bytes,
                 last_injected_bytes, last_reset_at, updated_at)
                VALUES (?, ?, 0, 0, ?, NULL, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    last_changed_files_hash = excluded.last_changed_files_hash,
                    last_injected_bytes = excluded.last_injected_bytes,
                    updated_at = excluded.updated_at
                """,
                (conversation_id, changed_files_hash, max(0, int(injected_bytes)), _utc_now()),
            )

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def list_artifacts(
        self,
        conversation_id: str,
        artifact_type: Optional[str] = None,
        limit: int = 12,
    ) -> List[ContinuityArtifact]:
        sql = "SELECT * FROM continuity_artifact WHERE conversation_id = ?"
        params: List[Any] = [conversation_id]
        if artifact_type:
            sql += " AND type = ?"
            params.append(artifact_type)
        sql += " ORDER BY seq DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_artifact(r) for r in rows]

    def insert_artifact(
        self,
        conversation_id: str,
        artifact_type: str,
        content: str,
        provenance: Dict[str, Any],
    ) -> ContinuityArtifact:
        artifact_id = str(uuid.uuid4())
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_artifact
                (id, conversation_id, type, content, status, provenance_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    artifact_id,
                    conversation_id,
                    artifact_type,
                    content,
                    ARTIFACT_STATUS_DRAFT,
                    json.dumps(provenance, sort_keys=True),
                    now,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM continuity_artifact WHERE id = ?", (artifact_id,)).fetchone()
        return _row_to_artifact(row)

    # ------------------------------------------------------------------
    # Safeguard settings
    # ------------------------------------------------------------------

    def get_settings(self) -> Optional[SafeguardSettings]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM continuity_settings WHERE id = ?",
                (SETTINGS_SINGLETON_ID,),
            ).fetchone()
        if not row:
            return None
        policy = row["artifact_policy"]
        return SafeguardSettings(
            artifact_policy=(
                ARTIFACT_POLICY_MEMORY_BRANCH
                if policy == ARTIFACT_POLICY_MEMORY_BRANCH
                else ARTIFACT_POLICY_MANUAL_COMMIT
            ),
            auto_commit_to_memory_branch=bool(row["auto_commit_to_memory_branch"]),
            memory_branch=row["memory_branch"] or DEFAULT_MEMORY_BRANCH,
        )

    def save_settings(self, settings: SafeguardSettings) -> SafeguardSettings:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO continuity_settings (id, artifact_policy, auto_commit_to_memory_branch, memory_branch, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    artifact_policy = excluded.artifact_policy,
                    auto_commit_to_memory_branch = excluded.auto_commit_to_memory_branch,
                    memory_branch = excluded.memory_branch,
                    updated_at = excluded.updated_at
                """,
                (
                    SETTINGS_SINGLETON_ID,
                    settings.artifact_policy,
                    1 if settings.auto_commit_to_memory_branch else 0,
                    settings.memory_branch,
                    _utc_now(),
                ),
            )
        return self.get_settings()  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_chat(self, name: str = "", chat_id: str = "") -> ChatRecord:
        chat_id = chat_id or str(uuid.uuid4())
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO chats (chat_id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (chat_id, name, now, now),
            )
        return self.get_chat(chat_id)  # type: ignore[return-value]

    def get_chat(self, chat_id: str) -> Optional[ChatRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM chats WHERE chat_id = ?", (chat_id,)).fetchone()
        if not row:
            return None
        return ChatRecord(
            chat_id=row["chat_id"],
            name=row["name"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def touch_chat(self, chat_id: str, when: Optional[datetime] = None) -> None:
        stamp = (when or datetime.now(timezone.utc)).isoformat()
        with self._connect() as conn:
            conn.execute("UPDATE chats SET updated_at = ? WHERE chat_id = ?", (stamp, chat_id))

    def create_conversation(
        self,
        chat_id: str,
        mode: str = "agent",
        conversation_id: str = "",
        messages: Optional[List[Dict[str, Any]]] = None,
        session_id: Optional[str] = None,
        stream_id: Optional[str] = None,
    ) -> ConversationRecord:
        conversation_id = conversation_id or str(uuid.uuid4())
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations
                (conversation_id, chat_id, mode, session_id, stream_id, messages_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (conversation_id, chat_id, mode, session_id, stream_id, json.dumps(messages or []), now, now),
            )
        return self.get_conversation(conversation_id)  # type: ignore[return-value]

    def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        if not row:
            return None
        return _row_to_conversation(row)

    def replace_conversation_messages(self, conversation_id: str, messages: List[Dict[str, Any]]) -> None:
        """Overwrite the stored history and drop any in-flight session/stream ids."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE conversations
                SET messages_json = ?, session_id = NULL, stream_id = NULL, updated_at = ?
                WHERE conversation_id = ?
                """,
                (json.dumps(messages), _utc_now(), conversation_id),
            )


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromisoformat(raw)


def _row_to_state(row: sqlite3.Row) -> ConversationContinuityState:
    return ConversationContinuityState(
        conversation_id=row["conversation_id"],
        last_changed_files_hash=row["last_changed_files_hash"] or "",
        turns_since_reset=int(row["turns_since_reset"] or 0),
        total_injected_bytes=int(row["total_injected_bytes"] or 0),
        last_injected_bytes=int(row["last_injected_bytes"] or 0),
        last_reset_at=_parse_dt(row["last_reset_at"]),
    )


def _row_to_artifact(row: sqlite3.Row) -> ContinuityArtifact:
    return ContinuityArtifact(
        artifact_id=row["id"],
        conversation_id=row["conversation_id"],
        type=row["type"],
        content=row["content"],
        status=row["status"],
        provenance_json=row["provenance_json"] or "{}",
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_conversation(row: sqlite3.Row) -> ConversationRecord:
    try:
        messages = json.loads(row["messages_json"] or "[]")
    except ValueError:
        messages = []
    return ConversationRecord(
        conversation_id=row["conversation_id"],
        chat_id=row["chat_id"],
        mode=row["mode"],
        session_id=row["session_id"],
        stream_id=row["stream_id"],
        messages=messages if isinstance(messages, list) else [],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
