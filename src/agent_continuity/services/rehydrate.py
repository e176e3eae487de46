"""Rehydrate compaction.

Replaces one conversation's stored history with a single synthetic
assistant message that carries forward the latest artifacts and the last
user prompt, and clears the session/stream ids so the next turn starts a
fresh model session.  The operation never touches sibling conversations.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from agent_continuity.domain.continuity import ContinuityArtifact
from agent_continuity.domain.contracts import ContinuityStore, ConversationStore
from agent_continuity.observability.structured_log import log_json
from agent_continuity.util import clamp_by_bytes, first_non_blank_line

logger = logging.getLogger(__name__)

REHYDRATE_MARKER = "[CONTINUITY_REHYDRATE]"
CARRY_FORWARD_ARTIFACTS = 6
CARRY_LINE_MAX_BYTES = 180
PROMPT_MAX_BYTES = 600


def build_rehydrate_message(
    mode: str,
    reasons: Sequence[str],
    artifacts: Sequence[ContinuityArtifact],
    prompt: str,
) -> str:
    carry_lines = [
        f"- {a.type}: {clamp_by_bytes(first_non_blank_line(a.content), CARRY_LINE_MAX_BYTES)}"
        for a in artifacts
    ]
    return "\n".join([
        REHYDRATE_MARKER,
        f"mode: {mode}",
        f"reasons: {'; '.join(reasons) or 'governor-pressure'}",
        *carry_lines,
        "",
        f"latest_user_prompt: {clamp_by_bytes(prompt, PROMPT_MAX_BYTES)}",
    ])


class Rehydrator:
    def __init__(self, store: ContinuityStore, conversations: ConversationStore):
        self._store = store
        self._conversations = conversations

    def execute(self, conversation_id: str, prompt: str, reasons: Sequence[str]) -> Optional[List[Dict[str, Any]]]:
        """Compact the conversation; returns the new history or ``None`` if skipped."""
        try:
            conversation = self._conversations.get_conversation(conversation_id)
            if conversation is None:
                return None
            artifacts = self._store.list_artifacts(conversation_id, limit=CARRY_FORWARD_ARTIFACTS)
            now = datetime.now(timezone.utc)
            compacted = [
                {
                    "id": str(uuid.uuid4()),
                    "role": "assistant",
                    "parts": [
                        {
                            "type": "text",
                            "text": build_rehydrate_message(conversation.mode, reasons, artifacts, prompt),
                        }
                    ],
                    "metadata": {
                        "continuityRehydrate": True,
                        "createdAt": now.isoformat(),
                    },
                }
            ]
            self._conversations.replace_conversation_messages(conversation_id, compacted)
            self._conversations.touch_chat(conversation.chat_id, now)
        except Exception as exc:
            logger.warning("continuity: rehydrate skipped conversation=%s: %s", conversation_id, exc)
            return None
        log_json(
            logger,
            "continuity.rehydrate.applied",
            conversation_id=conversation_id,
            carried_artifacts=len(artifacts),
            reasons=list(reasons),
        )
        return compacted
