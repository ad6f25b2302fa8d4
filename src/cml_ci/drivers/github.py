"""GitHub 드라이버 (REST v3).

- github.com은 api.github.com, 그 외 호스트는 GitHub Enterprise(/api/v3)
- 저장소 URI에 owner만 있으면 러너 관련 기능은 org 스코프로 동작
- 러너 등록은 config.sh가 직접 수행하므로 register_runner는 미지원
"""

from __future__ import annotations

import logging
import platform
import subprocess
import tarfile
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import httpx
import orjson

from cml_ci import upload as generic_upload
from cml_ci.config import GITHUB, AppConfig
from cml_ci.drivers.base import Driver
from cml_ci.errors import CMLError, ConfigurationError, NotFoundError, RunnerPreparationError
from cml_ci.models import PullRequest, Runner, RunnerRegistration, UploadResult
from cml_ci.process import (
    RunnerProcess,
    download,
    extract_tarball,
    make_executable,
    run_command,
    spawn,
)

logger = logging.getLogger(__name__)


def owner_repo(uri: str | None, env: Mapping[str, str]) -> tuple[str | None, str | None]:
    """저장소 URI(없으면 GITHUB_REPOSITORY)에서 (owner, repo)를 뽑는다."""
    if uri:
        parts = [p for p in urlsplit(uri).path.split("/") if p]
    elif repository := env.get("GITHUB_REPOSITORY"):
        parts = repository.split("/")
    else:
        parts = []

    owner = parts[0] if parts else None
    repo = parts[1] if len(parts) > 1 else None
    return owner, repo


class GitHubDriver(Driver):
    kind = GITHUB
    platform = "GitHub"

    def __init__(
        self,
        repo: str,
        token: str,
        *,
        config: AppConfig | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if repo:
            owner, _ = owner_repo(repo, {})
            if owner is None:
                raise ConfigurationError(f"repo not found: cannot resolve owner from {repo}")
        super().__init__(repo, token, config=config, env=env)
        self._owner, self._repo_name = owner_repo(self.repo, self._env)

        host = (urlsplit(self.repo).hostname or "").lower()
        if host in ("github.com", "www.github.com"):
            self._api_base = self._config.github.api_base.rstrip("/")
        else:
            # GitHub Enterprise: 저장소 호스트 + /api/v3
            self._api_base = f"https://{host}/api/v3"

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @property
    def api_base(self) -> str:
        return self._api_base

    @property
    def owner(self) -> str | None:
        return self._owner

    @property
    def repo_name(self) -> str | None:
        return self._repo_name

    def _repo_url(self, path: str) -> str:
        return f"{self._api_base}/repos/{self._owner}/{self._repo_name}{path}"

    def _runners_url(self, path: str = "") -> str:
        """repo가 있으면 repo 스코프, 없으면 org 스코프 러너 엔드포인트."""
        if self._repo_name is not None:
            return self._repo_url(f"/actions/runners{path}")
        return f"{self._api_base}/orgs/{self._owner}/actions/runners{path}"

    # ── 코멘트/체크 ───────────────────────────────────────

    def comment_create(self, report: str, commit_sha: str) -> str:
        data = self._request_json(
            "POST", self._repo_url(f"/commits/{commit_sha}/comments"), json={"body": report}
        )
        return data.get("html_url") or data.get("url", "")

    def check_create(
        self,
        report: str,
        head_sha: str,
        *,
        title: str | None = None,
        conclusion: str = "success",
        status: str = "completed",
    ) -> str:
        name = title or self._config.github.check_title
        now = datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        data = self._request_json(
            "POST",
            self._repo_url("/check-runs"),
            json={
                "name": name,
                "head_sha": head_sha,
                "started_at": now,
                "completed_at": now,
                "conclusion": conclusion,
                "status": status,
                "output": {"title": name, "summary": report},
            },
        )
        return data.get("html_url") or data.get("url", "")

    def upload(self, path: Path, *, mime_type: str | None = None) -> UploadResult:
        # 플랫폼 업로드 엔드포인트가 없으므로 범용 업로더에 위임
        return generic_upload.upload(path, self._config.upload, mime_type=mime_type)

    # ── 러너 ───────────────────────────────────────────────

    def runner_token(self) -> str:
        data = self._request_json("POST", self._runners_url("/registration-token"))
        return data["token"]

    def register_runner(self, name: str, labels: list[str]) -> RunnerRegistration:
        raise self._unsupported("register_runner")

    def unregister_runner(self, name: str) -> None:
        runner = self.runner_by_name(name)
        if runner is None:
            raise NotFoundError(f"Runner not found: {name}")
        self._request("DELETE", self._runners_url(f"/{runner.id}"))
        logger.info(
            "Unregistered runner %s (id=%d)",
            name,
            runner.id,
            extra={"event_code": "RUNNER_UNREGISTERED", "runner": name, "driver": self.kind},
        )

    def _get_runners(self) -> list[dict[str, Any]]:
        data = self._request_json("GET", self._runners_url(), params={"per_page": 100})
        return (data or {}).get("runners", [])

    @staticmethod
    def _to_runner(item: dict[str, Any]) -> Runner:
        return Runner(
            id=item["id"],
            name=item["name"],
            labels=frozenset(label["name"] for label in item.get("labels", [])),
        )

    def runner_by_name(self, name: str) -> Runner | None:
        for item in self._get_runners():
            if item.get("name") == name:
                return self._to_runner(item)
        return None

    def runners_by_labels(self, labels: list[str]) -> list[Runner]:
        runners = [self._to_runner(item) for item in self._get_runners()]
        return [runner for runner in runners if runner.has_labels(labels)]

    def _runner_archive_url(self) -> str:
        version = self._config.github.runner_version
        arch = "osx-x64" if platform.system() == "Darwin" else "linux-x64"
        return (
            f"https://github.com/actions/runner/releases/download/v{version}/"
            f"actions-runner-{arch}-{version}.tar.gz"
        )

    def start_runner(
        self,
        *,
        workdir: Path,
        name: str,
        labels: list[str],
        single: bool = False,
        idle_timeout: int = 300,
    ) -> RunnerProcess:
        """actions-runner를 준비하고 config.sh로 등록한 뒤 run.sh를 띄운다.

        idle_timeout은 actions-runner에 해당 옵션이 없어 사용하지 않는다.
        """
        runner_env = {**self._env, "RUNNER_ALLOW_RUNASROOT": "1"}
        try:
            workdir.mkdir(parents=True, exist_ok=True)

            # 이전 등록 정보가 남아 있으면 재설정을 위해 제거
            runner_cfg = workdir / ".runner"
            if runner_cfg.exists():
                runner_cfg.unlink()

            if not (workdir / "config.sh").exists():
                archive = workdir / "actions-runner.tar.gz"
                download(self._runner_archive_url(), archive)
                extract_tarball(archive, workdir)
                make_executable(workdir, recursive=True)

            run_command(
                [
                    str(workdir / "config.sh"),
                    "--unattended",
                    "--token",
                    self.runner_token(),
                    "--url",
                    self.repo,
                    "--name",
                    name,
                    "--labels",
                    ",".join(labels),
                    "--work",
                    str(workdir / "_work"),
                ],
                cwd=workdir,
                env=runner_env,
            )

            cmd = [str(workdir / "run.sh")]
            if single:
                cmd.append("--once")
            return spawn(cmd, name=name, driver=self.kind, cwd=workdir, env=runner_env)
        except (
            CMLError,
            OSError,
            httpx.HTTPError,
            tarfile.TarError,
            subprocess.SubprocessError,
        ) as exc:
            raise RunnerPreparationError(self.platform, exc) from exc

    # ── PR ─────────────────────────────────────────────────

    def pr_create(self, source: str, target: str, title: str, description: str) -> str:
        data = self._request_json(
            "POST",
            self._repo_url("/pulls"),
            json={"head": source, "base": target, "title": title, "body": description},
        )
        return data["html_url"]

    def prs(
        self,
        state: str | None = None,
        *,
        source: str | None = None,
        target: str | None = None,
    ) -> list[PullRequest]:
        params: dict[str, Any] = {"state": state or "open", "per_page": 100}
        if source:
            params["head"] = f"{self._owner}:{source}"
        if target:
            params["base"] = target
        data = self._request_json("GET", self._repo_url("/pulls"), params=params)
        return [
            PullRequest(
                url=pr["html_url"],
                source=pr["head"]["ref"],
                target=pr["base"]["ref"],
                title=pr.get("title") or "",
                description=pr.get("body") or "",
            )
            for pr in data or []
        ]

    # ── CI 환경 ────────────────────────────────────────────

    def _event_payload(self) -> dict[str, Any]:
        event_path = self._env.get("GITHUB_EVENT_PATH")
        if not event_path:
            return {}
        try:
            return orjson.loads(Path(event_path).read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            logger.warning("Failed reading GitHub event payload %s: %s", event_path, exc)
            return {}

    @property
    def sha(self) -> str | None:
        if self._env.get("GITHUB_EVENT_NAME") == "pull_request":
            head_sha = self._event_payload().get("pull_request", {}).get("head", {}).get("sha")
            if head_sha:
                return head_sha
        return self._env.get("GITHUB_SHA")

    @property
    def branch(self) -> str | None:
        if self._env.get("GITHUB_EVENT_NAME") == "pull_request" and self._env.get("GITHUB_HEAD_REF"):
            return self._env["GITHUB_HEAD_REF"]
        ref = self._env.get("GITHUB_REF")
        if ref and ref.startswith("refs/heads/"):
            return ref[len("refs/heads/"):]
        return ref

    @property
    def user_email(self) -> str | None:
        return "action@github.com"

    @property
    def user_name(self) -> str | None:
        return "GitHub Action"
