from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path

INTERNAL_DIR = ".conductor"


class WorkspaceError(RuntimeError):
    """Raised when a git operation on the working tree fails."""


class GitWorkspace:
    """Working-tree inspection and commits for one repository clone.

    ``commit_lock`` serializes the inspect-and-commit step for every task that
    shares this working tree; agent invocations themselves may overlap.
    """

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self.commit_lock = asyncio.Lock()
        self._git_enabled = self._is_git_repo()

    @property
    def git_enabled(self) -> bool:
        return self._git_enabled

    def _is_git_repo(self) -> bool:
        if not self.repo_root.is_dir():
            return False
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if not self.git_enabled:
            raise WorkspaceError(f"No git repository found at {self.repo_root}")
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise WorkspaceError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        return candidate.strip('"')

    def changed_paths(self) -> list[str]:
        proc = self._run_git(["status", "--porcelain", "--untracked-files=all"])
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            path = self._status_line_path(line)
            if not path or path.startswith(f"{INTERNAL_DIR}/"):
                continue
            paths.append(path)
        return paths

    def _stage_all(self) -> None:
        self._run_git(["add", "-A", "--", ".", f":(exclude){INTERNAL_DIR}"])

    def diff(self) -> str:
        """Stage the tree and return its diff against HEAD, new files included."""
        self._stage_all()
        return self._run_git(["diff", "--cached"]).stdout

    def commit_all(self, subject: str, body: str = "") -> str:
        self._stage_all()
        args = ["commit", "-m", subject]
        if body:
            args.extend(["-m", body])
        self._run_git(args)
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()
