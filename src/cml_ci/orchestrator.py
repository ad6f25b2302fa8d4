"""CML 파사드.

설정 확정 → 드라이버 1개 생성 후 모든 기능 호출을 그 드라이버로 위임한다.
워터마크/마크다운 렌더링처럼 플랫폼과 무관한 후처리는 여기서 한다.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from cml_ci import upload as generic_upload
from cml_ci.config import GITLAB, AppConfig, DriverConfig, load_config, resolve_driver_config
from cml_ci.drivers.base import Driver
from cml_ci.drivers.registry import get_driver
from cml_ci.errors import CMLError, ConfigurationError
from cml_ci.git import GitRepo
from cml_ci.log_events import parse_runner_log
from cml_ci.models import LogEvent, PullRequest, Runner, RunnerRegistration, UploadResult
from cml_ci.pr import PrOutcome, PullRequestAutomation
from cml_ci.process import RunnerProcess
from cml_ci.runner import RunnerLifecycleManager

logger = logging.getLogger(__name__)

WATERMARK = (
    " \n\n  ![CML watermark]"
    "(https://raw.githubusercontent.com/iterative/cml/master/assets/watermark.svg)"
)


def add_watermark(report: str) -> str:
    """본문 끝에 워터마크를 한 번만 붙인다."""
    if report.endswith(WATERMARK):
        return report
    return report + WATERMARK


def render_asset_md(uri: str, mime: str, title: str = "") -> str:
    """이미지/비디오는 ![](uri "title"), 그 외는 [title](uri). 제목이 없으면 따옴표도 없다."""
    if mime.startswith(("image/", "video/")):
        return f'![]({uri} "{title}")' if title else f"![]({uri})"
    return f"[{title}]({uri})"


class CML:
    """CI 플랫폼 작업의 단일 진입점."""

    def __init__(
        self,
        repo: str | None = None,
        token: str | None = None,
        driver: str | None = None,
        *,
        env: Mapping[str, str] | None = None,
        config: AppConfig | None = None,
        git: GitRepo | None = None,
    ):
        self._env: dict[str, str] = dict(env) if env is not None else dict(os.environ)
        self.config = config or load_config()
        self.git = git or GitRepo()

        self.settings: DriverConfig = resolve_driver_config(
            repo=repo,
            token=token,
            driver=driver,
            env=self._env,
            remote_url=lambda: self.git.remote_url(self.config.git.remote),
        )
        self.driver: Driver = get_driver(self.settings, config=self.config, env=self._env)
        logger.debug(
            "Resolved driver %s for %s",
            self.settings.driver,
            self.settings.repo,
            extra={"driver": self.settings.driver, "repo": self.settings.repo},
        )

    @property
    def repo(self) -> str:
        return self.settings.repo

    # ── CI 컨텍스트 ────────────────────────────────────────

    def head_sha(self) -> str:
        return self.driver.sha or self.git.head_sha()

    def branch(self) -> str:
        return self.driver.branch or self.git.current_branch()

    # ── 리포트 ─────────────────────────────────────────────

    def comment_create(
        self, report: str, commit_sha: str | None = None, *, rm_watermark: bool = False
    ) -> str:
        body = report if rm_watermark else add_watermark(report)
        sha = commit_sha or self.head_sha()
        url = self.driver.comment_create(body, sha)
        logger.info(
            "Created comment on %s",
            sha,
            extra={"event_code": "COMMENT_CREATED", "driver": self.driver.kind},
        )
        return url

    def check_create(
        self,
        report: str,
        head_sha: str | None = None,
        *,
        title: str | None = None,
        conclusion: str = "success",
    ) -> str:
        return self.driver.check_create(
            report,
            head_sha or self.head_sha(),
            title=title or self.config.github.check_title,
            conclusion=conclusion,
        )

    def publish(
        self,
        path: Path,
        *,
        md: bool = False,
        title: str = "",
        native: bool = False,
        mime_type: str | None = None,
        rm_watermark: bool = False,
    ) -> str:
        """에셋을 업로드하고 URI(또는 마크다운 조각)를 반환한다.

        native이면 플랫폼 업로드를, 아니면 범용 업로더를 쓴다.
        """
        if native:
            result: UploadResult = self.driver.upload(path, mime_type=mime_type)
        else:
            result = generic_upload.upload(path, self.config.upload, mime_type=mime_type)

        uri = result.uri
        if not rm_watermark:
            uri = generic_upload.watermark_uri(uri, result.mime.split("/")[-1])

        logger.info(
            "Published %s -> %s",
            path,
            uri,
            extra={"event_code": "ASSET_PUBLISHED", "driver": self.driver.kind},
        )
        return render_asset_md(uri, result.mime, title) if md else uri

    # ── 러너 ───────────────────────────────────────────────

    def runner_token(self) -> str:
        return self.driver.runner_token()

    def register_runner(self, name: str, labels: list[str]) -> RunnerRegistration:
        return self.driver.register_runner(name, labels)

    def unregister_runner(self, name: str) -> None:
        RunnerLifecycleManager(self.driver).unregister(name)

    def runner_by_name(self, name: str) -> Runner | None:
        return self.driver.runner_by_name(name)

    def runners_by_labels(self, labels: list[str]) -> list[Runner]:
        return self.driver.runners_by_labels(labels)

    def start_runner(
        self,
        *,
        name: str,
        labels: str | list[str],
        workdir: Path | None = None,
        single: bool = False,
        idle_timeout: int | None = None,
        reuse: bool = False,
    ) -> RunnerProcess:
        return RunnerLifecycleManager(self.driver).start(
            name=name,
            labels=labels,
            workdir=workdir or Path(self.config.runner.workdir),
            single=single,
            idle_timeout=self.config.runner.idle_timeout_sec if idle_timeout is None else idle_timeout,
            reuse=reuse,
        )

    def parse_runner_log(self, data: bytes | str | None) -> LogEvent | None:
        return parse_runner_log(data, self.driver.kind, self.repo)

    def repo_token_check(self) -> None:
        """토큰으로 러너 토큰을 발급할 수 있는지 확인한다.

        Raises:
            ConfigurationError: 러너 토큰 발급이 실패할 때
        """
        try:
            self.driver.runner_token()
        except CMLError as exc:
            raise ConfigurationError(
                "REPO_TOKEN does not have enough permissions to access workflow API"
            ) from exc

    # ── PR ─────────────────────────────────────────────────

    def prs(
        self,
        state: str | None = None,
        *,
        source: str | None = None,
        target: str | None = None,
    ) -> list[PullRequest]:
        return self.driver.prs(state, source=source, target=target)

    def pr_create(
        self,
        globs: Iterable[str] | None = None,
        *,
        md: bool = False,
        remote: str | None = None,
        user_email: str | None = None,
        user_name: str | None = None,
    ) -> PrOutcome | str | None:
        """변경 파일을 PR로 올린다.

        md이면 "[CML's Pull Request](url)" 형태(GitLab은 Merge Request)를,
        아니면 PrOutcome을 반환한다. 변경이 없을 때 md이면 None.
        """
        automation = PullRequestAutomation(self.driver, self.git, env=self._env)
        outcome = automation.run(
            globs=list(globs) if globs else self.config.git.pr_globs,
            remote=remote or self.config.git.remote,
            user_email=user_email or self.config.git.user_email,
            user_name=user_name or self.config.git.user_name,
        )
        if not md:
            return outcome
        if outcome.url is None:
            return None
        kind = "Merge Request" if self.driver.kind == GITLAB else "Pull Request"
        return f"[CML's {kind}]({outcome.url})"

    # ── 리소스 ──────────────────────────────────────────

    def close(self) -> None:
        self.driver.close()

    def __enter__(self) -> CML:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
