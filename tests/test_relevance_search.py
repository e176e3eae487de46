import tempfile
import unittest
from pathlib import Path
from typing import List
from unittest.mock import patch

from agent_continuity.domain.continuity import SearchResult
from agent_continuity.execution.file_lister import RipgrepFileLister
from agent_continuity.execution.git import GitCommandError
from agent_continuity.persistence.sqlite_store import SqliteContinuityStore
from agent_continuity.services.relevance_search import RelevanceSearch, score_paths


class _StaticLister:
    def __init__(self, files: List[str]):
        self.files = list(files)
        self.calls = 0

    async def list_files(self, root):
        self.calls += 1
        return list(self.files)


class _BrokenLister:
    async def list_files(self, root):
        raise RuntimeError("listing exploded")


class _Clock:
    def __init__(self, start=1_000_000):
        self.now = start

    def __call__(self):
        return self.now


class TestScorePaths(unittest.TestCase):
    def test_basename_outranks_directory_match(self):
        files = ["src/auth/session.ts", "src/components/auth.tsx", "README.md"]
        ranked = score_paths(files, ["auth"])
        self.assertEqual(ranked, ["src/components/auth.tsx", "src/auth/session.ts"])

    def test_ties_keep_listing_order_and_zero_scores_dropped(self):
        files = ["b/parser.py", "a/parser.py", "unrelated.txt"]
        self.assertEqual(score_paths(files, ["parser"]), ["b/parser.py", "a/parser.py"])

    def test_limit(self):
        files = [f"pkg/cache_{i}.py" for i in range(40)]
        self.assertEqual(len(score_paths(files, ["cache"], limit=24)), 24)


class TestRelevanceSearch(unittest.IsolatedAsyncioTestCase):
    async def test_empty_keywords_skip_listing(self):
        lister = _StaticLister(["a.py"])
        search = RelevanceSearch(lister)
        self.assertEqual(await search.search_relevant_files("/repo", [], "abc"), [])
        self.assertEqual(lister.calls, 0)

    async def test_results_cached_within_ttl(self):
        lister = _StaticLister(["src/parser.py", "src/lexer.py"])
        clock = _Clock()
        search = RelevanceSearch(lister, ttl_ms=60_000, clock=clock)
        first = await search.search_relevant_files("/repo", ["parser"], "abc")
        clock.now += 30_000
        second = await search.search_relevant_files("/repo", ["parser"], "abc")
        self.assertEqual(first, ["src/parser.py"])
        self.assertEqual(second, first)
        self.assertEqual(lister.calls, 1)

    async def test_expired_entry_recomputed(self):
        lister = _StaticLister(["src/parser.py"])
        clock = _Clock()
        search = RelevanceSearch(lister, ttl_ms=60_000, clock=clock)
        await search.search_relevant_files("/repo", ["parser"], "abc")
        clock.now += 60_001
        await search.search_relevant_files("/repo", ["parser"], "abc")
        self.assertEqual(lister.calls, 2)

    async def test_new_head_is_a_different_key(self):
        lister = _StaticLister(["src/parser.py"])
        search = RelevanceSearch(lister)
        await search.search_relevant_files("/repo", ["parser"], "abc")
        await search.search_relevant_files("/repo", ["parser"], "def")
        self.assertEqual(lister.calls, 2)

    async def test_listing_failure_yields_empty(self):
        search = RelevanceSearch(_BrokenLister())
        self.assertEqual(await search.search_relevant_files("/repo", ["parser"], "abc"), [])

    async def test_durable_cache_survives_new_instance(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = SqliteContinuityStore(Path(tmp) / "state.db")
            clock = _Clock()
            lister = _StaticLister(["src/parser.py"])
            await RelevanceSearch(lister, store=store, clock=clock).search_relevant_files(
                "/repo", ["parser"], "abc"
            )
            other = _StaticLister(["src/other.py"])
            again = await RelevanceSearch(other, store=store, clock=clock).search_relevant_files(
                "/repo", ["parser"], "abc"
            )
            self.assertEqual(again, ["src/parser.py"])
            self.assertEqual(other.calls, 0)
            saved = store.get_search("/repo:abc:parser")
            self.assertEqual(saved, SearchResult(files=("src/parser.py",), timestamp_ms=clock.now))

    async def test_stale_durable_entry_is_a_miss(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = SqliteContinuityStore(Path(tmp) / "state.db")
            clock = _Clock()
            store.upsert_search(
                "/repo:abc:parser",
                "/repo",
                "parser",
                "abc",
                SearchResult(files=("src/old_parser.py",), timestamp_ms=clock.now - 60_001),
            )
            lister = _StaticLister(["src/parser.py"])
            found = await RelevanceSearch(lister, store=store, ttl_ms=60_000, clock=clock).search_relevant_files(
                "/repo", ["parser"], "abc"
            )
            self.assertEqual(found, ["src/parser.py"])
            self.assertEqual(lister.calls, 1)
            self.assertEqual(store.get_search("/repo:abc:parser").timestamp_ms, clock.now)


class TestRipgrepFileLister(unittest.IsolatedAsyncioTestCase):
    async def test_falls_back_to_git_then_walk(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "src").mkdir()
            (root / "src" / "main.py").write_text("print('x')\n", encoding="utf-8")
            (root / "node_modules").mkdir()
            (root / "node_modules" / "dep.js").write_text("", encoding="utf-8")

            class _NoGit:
                async def raw_command(self, *args, **kwargs):
                    raise GitCommandError(["git", "ls-files"], reason="not a repository")

            lister = RipgrepFileLister(git=_NoGit(), rg_executable="rg-does-not-exist")
            files = await lister.list_files(str(root))
            self.assertEqual(files, ["src/main.py"])

    async def test_uses_git_when_ripgrep_missing(self):
        class _Git:
            async def raw_command(self, root, args, timeout_sec=5.0, max_buffer_bytes=0):
                self.args = list(args)
                return "a.py\nsrc/b.py\n"

        git = _Git()
        with patch(
            "agent_continuity.execution.file_lister.run_command",
            side_effect=GitCommandError(["rg"], reason="missing"),
        ):
            files = await RipgrepFileLister(git=git).list_files("/repo")
        self.assertEqual(files, ["a.py", "src/b.py"])
        self.assertEqual(git.args, ["ls-files", "--cached", "--others", "--exclude-standard"])


if __name__ == "__main__":
    unittest.main()
