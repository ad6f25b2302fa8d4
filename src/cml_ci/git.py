"""로컬 git 저장소 래퍼.

모든 VCS 변경은 로컬 git 바이너리에 위임한다.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from cml_ci.errors import GitCommandError

logger = logging.getLogger(__name__)


class GitRepo:
    """작업 디렉터리의 git 명령 실행기."""

    def __init__(self, path: Path | None = None, *, timeout: float = 120.0):
        self.path = (path or Path.cwd()).resolve()
        self._timeout = timeout

    def run(self, *args: str, check: bool = True) -> str:
        cmd = ["git", *args]
        proc = subprocess.run(
            cmd,
            cwd=self.path,
            text=True,
            capture_output=True,
            timeout=self._timeout,
            check=False,
        )
        if check and proc.returncode != 0:
            raise GitCommandError(cmd, proc.returncode, proc.stderr or "")
        return proc.stdout or ""

    def head_sha(self) -> str:
        return self.run("rev-parse", "HEAD").strip()

    def current_branch(self) -> str:
        return self.run("branch", "--show-current").strip()

    def remote_url(self, remote: str = "origin") -> str | None:
        """remote URL. 설정되어 있지 않으면 None."""
        out = self.run("config", "--get", f"remote.{remote}.url", check=False).strip()
        return out or None

    def changed_files(self) -> list[str]:
        """git status --porcelain -z 기준 변경 파일 (untracked 포함).

        rename/copy 항목은 새 경로 뒤에 원래 경로가 NUL로 한 번 더 온다.
        """
        files: list[str] = []
        entries = iter(self.run("status", "--porcelain", "-z", "--untracked-files=all").split("\0"))
        for entry in entries:
            if len(entry) < 4:
                continue
            files.append(entry[3:])
            if "R" in entry[:2] or "C" in entry[:2]:
                next(entries, None)
        return files

    def remote_branch_exists(self, branch: str, remote: str = "origin") -> bool:
        url = self.remote_url(remote) or remote
        out = self.run("ls-remote", url, branch)
        return any(line.endswith(f"refs/heads/{branch}") for line in out.splitlines())

    def set_identity(self, email: str, name: str) -> None:
        self.run("config", "--local", "user.email", email)
        self.run("config", "--local", "user.name", name)

    def set_remote_url(self, remote: str, url: str) -> None:
        self.run("remote", "set-url", remote, url)

    def checkout(self, branch: str, start_point: str | None = None, *, reset: bool = False) -> None:
        flag = "-B" if reset else "-b"
        args = ["checkout", flag, branch]
        if start_point:
            args.append(start_point)
        self.run(*args)

    def add(self, paths: list[str]) -> None:
        self.run("add", "--", *paths)

    def commit(self, message: str) -> None:
        self.run("commit", "-m", message)

    def push(self, remote: str, branch: str) -> None:
        self.run("push", "--set-upstream", remote, branch)
        logger.info("Pushed %s to %s", branch, remote)
