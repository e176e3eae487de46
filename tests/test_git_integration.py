import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from agent_continuity.domain.continuity import NO_GIT_HEAD
from agent_continuity.execution.file_lister import RipgrepFileLister
from agent_continuity.execution.git import GitCli, GitCommandError, _kill, run_command
from agent_continuity.services.repo_state import RepoStateReader


def _git(root: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.email=dev@example.com", "-c", "user.name=Dev", *args],
        cwd=root,
        check=True,
        capture_output=True,
    )


@unittest.skipUnless(shutil.which("git"), "git executable not available")
class TestGitCli(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        _git(self.root, "init", "-q", "-b", "trunk")
        (self.root / "app.py").write_text("a = 1\nb = 2\n", encoding="utf-8")
        _git(self.root, "add", "app.py")
        _git(self.root, "commit", "-q", "-m", "init")

    def tearDown(self):
        self._tmp.cleanup()

    async def test_head_branch_and_changes(self):
        (self.root / "app.py").write_text("a = 10\nb = 2\nc = 3\n", encoding="utf-8")
        (self.root / "new file.txt").write_text("x\n", encoding="utf-8")
        git = GitCli()
        head = await git.head_revision(str(self.root))
        self.assertEqual(len(head), 40)
        self.assertEqual(await git.current_branch(str(self.root)), "trunk")

        reader = RepoStateReader(git)
        state = await reader.get_repo_state(str(self.root))
        self.assertEqual(state.changed_files, ("app.py", "new file.txt"))
        stats = await reader.get_diff_stats(str(self.root))
        self.assertEqual(stats.total_lines, 3)

    async def test_git_ls_files_fallback(self):
        (self.root / "extra.md").write_text("notes\n", encoding="utf-8")
        lister = RipgrepFileLister(git=GitCli(), rg_executable="rg-not-installed")
        files = await lister.list_files(str(self.root))
        self.assertEqual(sorted(files), ["app.py", "extra.md"])

    async def test_outside_repository(self):
        with tempfile.TemporaryDirectory() as other:
            with self.assertRaises(GitCommandError):
                await GitCli().head_revision(other)
            state = await RepoStateReader(GitCli()).get_repo_state(other)
            self.assertEqual(state.head_revision, NO_GIT_HEAD)


class TestRunCommand(unittest.IsolatedAsyncioTestCase):
    async def test_missing_executable(self):
        with self.assertRaises(GitCommandError):
            await run_command(["definitely-not-a-real-binary-xyz"])

    async def test_output_over_cap_is_rejected(self):
        argv = [sys.executable, "-c", "import sys; sys.stdout.write('x' * 200000)"]
        with self.assertRaises(GitCommandError) as ctx:
            await run_command(argv, max_buffer_bytes=1000)
        self.assertIn("output exceeded 1000 bytes", str(ctx.exception))

    async def test_output_under_cap(self):
        result = await run_command([sys.executable, "-c", "print('ok')"], max_buffer_bytes=1000)
        self.assertEqual(result.returncode, 0)
        self.assertEqual(result.stdout.strip(), "ok")

    async def test_timeout(self):
        argv = [sys.executable, "-c", "import time; time.sleep(10)"]
        with self.assertRaises(GitCommandError) as ctx:
            await run_command(argv, timeout_sec=0.2)
        self.assertIn("timed out", str(ctx.exception))

    async def test_kill_tolerates_exited_process(self):
        proc = MagicMock()
        proc.kill.side_effect = ProcessLookupError()
        proc.wait = AsyncMock(return_value=0)
        await _kill(proc)
        proc.wait.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
