import json
import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from agent_continuity.domain.continuity import (
    ARTIFACT_CREATED_BY,
    ARTIFACT_STATUS_DRAFT,
    ARTIFACT_TYPE_ADR,
    ARTIFACT_TYPE_DEVLOG,
)
from agent_continuity.persistence.sqlite_store import SqliteContinuityStore
from agent_continuity.services.artifact_writer import ArtifactWriter
from agent_continuity.services.rehydrate import REHYDRATE_MARKER, Rehydrator, build_rehydrate_message


def _make_store(tmp: str) -> SqliteContinuityStore:
    return SqliteContinuityStore(Path(tmp) / "test.db")


class TestArtifactWriter(unittest.TestCase):
    def test_writes_draft_with_provenance(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            artifact = ArtifactWriter(store).write_artifact_if_new("c1", ARTIFACT_TYPE_DEVLOG, "fp1", "diff_lines: 200")
            self.assertIsNotNone(artifact)
            self.assertEqual(artifact.status, ARTIFACT_STATUS_DRAFT)
            self.assertEqual(
                json.loads(artifact.provenance_json),
                {"eventFingerprint": "fp1", "createdBy": ARTIFACT_CREATED_BY},
            )

    def test_same_fingerprint_is_idempotent(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            writer = ArtifactWriter(store)
            writer.write_artifact_if_new("c1", ARTIFACT_TYPE_DEVLOG, "fp1", "first")
            self.assertIsNone(writer.write_artifact_if_new("c1", ARTIFACT_TYPE_DEVLOG, "fp1", "second"))
            self.assertEqual(len(store.list_artifacts("c1")), 1)

    def test_fingerprint_scoped_by_type_and_conversation(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            writer = ArtifactWriter(store)
            writer.write_artifact_if_new("c1", ARTIFACT_TYPE_DEVLOG, "fp1", "devlog")
            self.assertIsNotNone(writer.write_artifact_if_new("c1", ARTIFACT_TYPE_ADR, "fp1", "adr"))
            self.assertIsNotNone(writer.write_artifact_if_new("c2", ARTIFACT_TYPE_DEVLOG, "fp1", "devlog"))

    def test_malformed_provenance_does_not_block_insert(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            store.insert_artifact("c1", ARTIFACT_TYPE_DEVLOG, "legacy row", {"eventFingerprint": "fp1"})
            with sqlite3.connect(str(store.db_path)) as conn:
                conn.execute("UPDATE continuity_artifact SET provenance_json = '{not json'")
            artifact = ArtifactWriter(store).write_artifact_if_new("c1", ARTIFACT_TYPE_DEVLOG, "fp1", "fresh")
            self.assertIsNotNone(artifact)
            self.assertEqual([a.content for a in store.list_artifacts("c1")], ["fresh", "legacy row"])

    def test_secrets_redacted_before_persisting(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            ArtifactWriter(store).write_artifact_if_new(
                "c1", ARTIFACT_TYPE_DEVLOG, "fp1", "prompt: use api_key=supersecret123"
            )
            stored = store.list_artifacts("c1")[0]
            self.assertNotIn("supersecret123", stored.content)
            self.assertIn("REDACTED", stored.content)

    def test_store_failure_is_swallowed(self):
        store = MagicMock()
        store.list_artifacts.side_effect = RuntimeError("disk full")
        self.assertIsNone(ArtifactWriter(store).write_artifact_if_new("c1", ARTIFACT_TYPE_DEVLOG, "fp", "x"))
        store.insert_artifact.assert_not_called()


class TestRehydrateMessage(unittest.TestCase):
    def test_message_layout(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            store.insert_artifact("c1", ARTIFACT_TYPE_DEVLOG, "\nprovider: claude\nmode: agent", {})
            artifacts = store.list_artifacts("c1")
            text = build_rehydrate_message("agent", ["turn-pressure-high"], artifacts, "next step please")
            lines = text.split("\n")
            self.assertEqual(lines[0], REHYDRATE_MARKER)
            self.assertEqual(lines[1], "mode: agent")
            self.assertEqual(lines[2], "reasons: turn-pressure-high")
            self.assertEqual(lines[3], "- devlog: provider: claude")
            self.assertEqual(lines[-1], "latest_user_prompt: next step please")

    def test_empty_reasons_fallback(self):
        text = build_rehydrate_message("plan", [], [], "p")
        self.assertIn("reasons: governor-pressure", text)


class TestRehydrator(unittest.TestCase):
    def test_replaces_only_target_conversation(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            chat = store.create_chat(name="work")
            history = [{"id": "m1", "role": "user", "parts": [{"type": "text", "text": "hi"}]}]
            target = store.create_conversation(
                chat.chat_id, messages=history, session_id="sess-1", stream_id="stream-1"
            )
            sibling = store.create_conversation(chat.chat_id, messages=history, session_id="sess-2")
            for i in range(8):
                store.insert_artifact(target.conversation_id, ARTIFACT_TYPE_DEVLOG, f"entry {i}", {})

            compacted = Rehydrator(store, store).execute(target.conversation_id, "continue", ["turn-pressure-high"])
            self.assertEqual(len(compacted), 1)

            after = store.get_conversation(target.conversation_id)
            self.assertEqual(len(after.messages), 1)
            message = after.messages[0]
            self.assertEqual(message["role"], "assistant")
            self.assertTrue(message["metadata"]["continuityRehydrate"])
            text = message["parts"][0]["text"]
            self.assertTrue(text.startswith(REHYDRATE_MARKER))
            self.assertEqual(text.count("- devlog: "), 6)
            self.assertIn("entry 7", text)
            self.assertIsNone(after.session_id)
            self.assertIsNone(after.stream_id)

            untouched = store.get_conversation(sibling.conversation_id)
            self.assertEqual(untouched.messages, history)
            self.assertEqual(untouched.session_id, "sess-2")

    def test_missing_conversation_is_noop(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            self.assertIsNone(Rehydrator(store, store).execute("nope", "p", []))

    def test_conversation_store_failure_is_swallowed(self):
        conversations = MagicMock()
        conversations.get_conversation.side_effect = RuntimeError("db gone")
        self.assertIsNone(Rehydrator(MagicMock(), conversations).execute("c1", "p", []))


if __name__ == "__main__":
    unittest.main()
