from __future__ import annotations

import json
import logging
from typing import Optional

from agent_continuity.domain.continuity import ARTIFACT_CREATED_BY, ContinuityArtifact
from agent_continuity.domain.contracts import ContinuityStore
from agent_continuity.observability.structured_log import log_json
from agent_continuity.util import redact_with_audit

logger = logging.getLogger(__name__)

DEDUP_WINDOW = 12


class ArtifactWriter:
    """Append-only artifact writes, idempotent per event fingerprint.

    The last ``DEDUP_WINDOW`` artifacts of the same conversation and type
    are checked for a matching fingerprint; a match is a silent no-op.
    """

    def __init__(self, store: ContinuityStore, dedup_window: int = DEDUP_WINDOW):
        self._store = store
        self._dedup_window = max(1, int(dedup_window))

    def write_artifact_if_new(
        self,
        conversation_id: str,
        artifact_type: str,
        event_fingerprint: str,
        content: str,
    ) -> Optional[ContinuityArtifact]:
        try:
            recent = self._store.list_artifacts(
                conversation_id,
                artifact_type=artifact_type,
                limit=self._dedup_window,
            )
            if any(_fingerprint_of(a) == event_fingerprint for a in recent):
                return None
            redacted = redact_with_audit(content)
            artifact = self._store.insert_artifact(
                conversation_id,
                artifact_type,
                redacted.text,
                {"eventFingerprint": event_fingerprint, "createdBy": ARTIFACT_CREATED_BY},
            )
        except Exception as exc:
            logger.warning(
                "continuity: artifact write skipped conversation=%s type=%s: %s",
                conversation_id, artifact_type, exc,
            )
            return None
        log_json(
            logger,
            "continuity.artifact.written",
            conversation_id=conversation_id,
            type=artifact_type,
            artifact_id=artifact.artifact_id,
            redactions=redacted.replacements,
        )
        return artifact


def _fingerprint_of(artifact: ContinuityArtifact) -> str:
    try:
        parsed = json.loads(artifact.provenance_json or "{}")
    except ValueError:
        return ""
    if not isinstance(parsed, dict):
        return ""
    return str(parsed.get("eventFingerprint") or "")
