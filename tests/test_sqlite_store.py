import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from agent_continuity.domain.continuity import (
    ARTIFACT_TYPE_ADR,
    ARTIFACT_TYPE_DEVLOG,
    ConversationContinuityState,
    PackCacheEntry,
)
from agent_continuity.persistence.sqlite_store import SqliteContinuityStore


def _make_store(tmp: str) -> SqliteContinuityStore:
    return SqliteContinuityStore(Path(tmp) / "nested" / "state.db")


class TestContinuityState(unittest.TestCase):
    def test_roundtrip_with_reset_timestamp(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            reset = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
            state = ConversationContinuityState("c1", "h1", 3, 4000, 1200, reset)
            store.upsert_continuity_state(state)
            self.assertEqual(store.get_continuity_state("c1"), state)
            self.assertIsNone(store.get_continuity_state("c2"))

    def test_record_pack_applied_keeps_counters(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            store.upsert_continuity_state(ConversationContinuityState("c1", "h1", 5, 9000, 100, None))
            store.record_pack_applied("c1", "h2", 2500)
            state = store.get_continuity_state("c1")
            self.assertEqual(state.last_changed_files_hash, "h2")
            self.assertEqual(state.turns_since_reset, 5)
            self.assertEqual(state.total_injected_bytes, 9000)
            self.assertEqual(state.last_injected_bytes, 2500)

    def test_record_pack_applied_creates_row(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            store.record_pack_applied("c1", "h1", 700)
            state = store.get_continuity_state("c1")
            self.assertEqual(state.turns_since_reset, 0)
            self.assertEqual(state.last_injected_bytes, 700)
            self.assertIsNone(state.last_reset_at)


class TestCaches(unittest.TestCase):
    def test_pack_upsert_overwrites(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            entry = PackCacheEntry("k", "fp", "h", "abc", "claude", "agent", 24000, "pack-1")
            store.upsert_pack(entry)
            store.upsert_pack(PackCacheEntry("k", "fp", "h", "abc", "claude", "agent", 24000, "pack-2"))
            self.assertEqual(store.get_pack("k"), "pack-2")
            self.assertIsNone(store.get_pack("other"))

    def test_file_summary(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            store.upsert_file_summary("k", "/repo", "a.py", "hash", "file: a.py")
            self.assertEqual(store.get_file_summary("k"), "file: a.py")


class TestArtifacts(unittest.TestCase):
    def test_newest_first_and_type_filter(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            for i in range(3):
                store.insert_artifact("c1", ARTIFACT_TYPE_DEVLOG, f"devlog {i}", {"eventFingerprint": str(i)})
            store.insert_artifact("c1", ARTIFACT_TYPE_ADR, "adr", {})
            store.insert_artifact("c2", ARTIFACT_TYPE_DEVLOG, "other conversation", {})

            everything = store.list_artifacts("c1")
            self.assertEqual([a.content for a in everything], ["adr", "devlog 2", "devlog 1", "devlog 0"])
            devlogs = store.list_artifacts("c1", artifact_type=ARTIFACT_TYPE_DEVLOG, limit=2)
            self.assertEqual([a.content for a in devlogs], ["devlog 2", "devlog 1"])


class TestConversations(unittest.TestCase):
    def test_replace_messages_clears_session(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            chat = store.create_chat("chat")
            conv = store.create_conversation(chat.chat_id, mode="plan", session_id="s", stream_id="t")
            self.assertEqual(conv.mode, "plan")
            store.replace_conversation_messages(conv.conversation_id, [{"id": "x", "role": "assistant"}])
            after = store.get_conversation(conv.conversation_id)
            self.assertEqual(after.messages, [{"id": "x", "role": "assistant"}])
            self.assertIsNone(after.session_id)
            self.assertIsNone(after.stream_id)

    def test_touch_chat(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = _make_store(tmp)
            chat = store.create_chat("chat")
            later = datetime(2030, 1, 1, tzinfo=timezone.utc)
            store.touch_chat(chat.chat_id, later)
            self.assertEqual(store.get_chat(chat.chat_id).updated_at, later)


if __name__ == "__main__":
    unittest.main()
