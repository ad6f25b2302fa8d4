"""자동 결과 PR/MR 생성.

같은 커밋에 대해 여러 번 실행해도 PR이 하나로 수렴하도록 source 브랜치
이름을 (target, sha 앞 8자리)로부터 결정적으로 만든다. 브랜치 존재 확인과
생성은 원격에 대해 트랜잭션이 아니므로, 동시에 실행된 파이프라인끼리의
경합은 push 실패(GitCommandError)로 드러난다.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Literal
from urllib.parse import quote, urlsplit, urlunsplit

from cml_ci.config import GIT_USER_EMAIL, GIT_USER_NAME, GITLAB
from cml_ci.drivers.base import Driver
from cml_ci.git import GitRepo

logger = logging.getLogger(__name__)

DEFAULT_GLOBS = ("dvc.lock", ".gitignore")
SHORT_SHA_LEN = 8


def pr_branch_name(target: str, sha: str) -> str:
    """source 브랜치 이름: {target}-cml-pr-{sha 앞 8자리}."""
    return f"{target}-cml-pr-{sha[:SHORT_SHA_LEN]}"


@dataclass
class PrOutcome:
    """PR 자동화 결과.

    - status=no_op: 관련 변경이 없어 아무것도 하지 않음
    - status=pr_returned: url에 PR 주소 (reused=True면 기존 PR)
    """

    status: Literal["pr_returned", "no_op"]
    url: str | None = None
    source: str | None = None
    target: str | None = None
    reused: bool = False
    reason: str | None = None


class PullRequestAutomation:
    """로컬 변경을 커밋/push하고 드라이버로 PR을 연다."""

    def __init__(
        self,
        driver: Driver,
        git: GitRepo,
        *,
        env: Mapping[str, str] | None = None,
    ):
        self._driver = driver
        self._git = git
        self._env: Mapping[str, str] = env or {}

    def _matched_paths(self, changed: list[str], globs: Iterable[str]) -> list[str]:
        root = self._git.path
        matched: set[str] = set()
        for pattern in globs:
            for path in root.glob(pattern):
                matched.add(path.relative_to(root).as_posix())
        return [f for f in changed if f in matched]

    def _authenticated_remote(self, remote: str) -> str | None:
        """GitLab CI에서 push할 수 있도록 토큰을 넣은 remote URL."""
        url = self._git.remote_url(remote) or self._driver.repo
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            return None
        user = quote(self._driver.user_name or "oauth2", safe="")
        password = quote(self._driver.token, safe="")
        netloc = f"{user}:{password}@{parts.hostname}"
        if parts.port:
            netloc += f":{parts.port}"
        path = parts.path if parts.path.endswith(".git") else f"{parts.path}.git"
        return urlunsplit((parts.scheme, netloc, path, "", ""))

    def run(
        self,
        *,
        globs: Iterable[str] = DEFAULT_GLOBS,
        remote: str = "origin",
        user_email: str | None = None,
        user_name: str | None = None,
    ) -> PrOutcome:
        """변경 감지 → 브랜치 확정 → PR 생성/재사용.

        Raises:
            GitCommandError: git 명령 실패 (동시 실행 push 충돌 포함)
            RemoteCallError: PR 목록/생성 API 실패
        """
        changed = self._git.changed_files()
        if not changed:
            logger.info("No files changed. Nothing to do.")
            return PrOutcome(status="no_op", reason="no files changed")

        paths = self._matched_paths(changed, globs)
        if not paths:
            logger.info("Input files are not affected. Nothing to do.")
            return PrOutcome(status="no_op", reason="input files are not affected")

        sha = self._driver.sha or self._git.head_sha()
        short_sha = sha[:SHORT_SHA_LEN]
        target = self._driver.branch or self._git.current_branch()
        source = pr_branch_name(target, sha)

        if self._git.remote_branch_exists(source, remote):
            for pr in self._driver.prs(source=source, target=target):
                if source.endswith(pr.source) and target.endswith(pr.target):
                    logger.info(
                        "Reusing existing PR %s for %s",
                        pr.url,
                        source,
                        extra={"event_code": "PR_REUSED", "driver": self._driver.kind},
                    )
                    return PrOutcome(
                        status="pr_returned", url=pr.url, source=source, target=target, reused=True
                    )
            logger.info("Branch %s exists without an open PR, creating one", source)
        else:
            self._git.set_identity(
                user_email or GIT_USER_EMAIL,
                user_name or GIT_USER_NAME,
            )

            if self._env.get("CI") and self._driver.kind == GITLAB:
                if authenticated := self._authenticated_remote(remote):
                    self._git.set_remote_url(remote, authenticated)

            self._git.checkout(target, sha, reset=True)
            self._git.checkout(source)
            self._git.add(paths)
            self._git.commit(f"CML PR for {short_sha} [skip ci]")
            self._git.push(remote, source)

        title = f"CML PR for {target} {short_sha}"
        description = f"\nAutomated commits for {self._driver.repo}/commit/{sha} created by CML.\n"
        url = self._driver.pr_create(source, target, title, description)
        logger.info(
            "Created PR %s (%s -> %s)",
            url,
            source,
            target,
            extra={"event_code": "PR_CREATED", "driver": self._driver.kind},
        )
        return PrOutcome(status="pr_returned", url=url, source=source, target=target)
