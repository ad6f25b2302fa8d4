"""GitLab 드라이버 (REST v4).

경로 기반으로 마운트된 self-hosted 설치를 지원하기 위해 저장소 URL의
경로 접두사를 긴 것부터 짧은 것 순으로 /api/v4/version 에 조회해 실제
API 루트를 찾는다. 찾은 루트는 드라이버 생애 동안 캐시한다.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import quote, urlsplit

import httpx

from cml_ci.config import GITLAB, AppConfig
from cml_ci.drivers.base import Driver
from cml_ci.errors import (
    CMLError,
    ConfigurationError,
    NotFoundError,
    RemoteCallError,
    RunnerPreparationError,
)
from cml_ci.models import PullRequest, Runner, RunnerRegistration, UploadResult
from cml_ci.process import RunnerProcess, download, has_gpu, make_executable, spawn
from cml_ci.upload import fetch_upload_data

logger = logging.getLogger(__name__)


class GitLabDriver(Driver):
    kind = GITLAB
    platform = "GitLab"

    def __init__(
        self,
        repo: str,
        token: str,
        *,
        config: AppConfig | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if repo:
            parts = urlsplit(repo)
            if parts.scheme not in ("http", "https") or not parts.netloc or not parts.path.strip("/"):
                raise ConfigurationError(f"repo not found: {repo} is not a GitLab project URL")
        super().__init__(repo, token, config=config, env=env)
        self._api_version = self._config.gitlab.api_version
        self._detected_base: str | None = None

    def _auth_headers(self) -> dict[str, str]:
        return {"PRIVATE-TOKEN": self.token, "Accept": "application/json"}

    # ── API 루트 탐색 ─────────────────────────────────────

    def _candidate_bases(self) -> list[str]:
        """저장소 URL 경로 접두사 후보 (긴 것 → 짧은 것, 전체 경로 제외)."""
        parts = urlsplit(self.repo)
        origin = f"{parts.scheme}://{parts.netloc}"
        segments = [s for s in parts.path.split("/") if s]
        return ["/".join([origin, *segments[:i]]) for i in range(len(segments) - 1, -1, -1)]

    def _probe(self, base: str) -> bool:
        try:
            data = self._request_json("GET", f"{base}/api/{self._api_version}/version")
        except (RemoteCallError, ValueError):
            return False
        return isinstance(data, dict) and bool(data.get("version"))

    def repo_base(self) -> str:
        """실제 GitLab 설치 루트 URL.

        Raises:
            RemoteCallError: 어떤 접두사도 version 엔드포인트에 응답하지 않을 때
        """
        if self._detected_base:
            return self._detected_base

        for base in self._candidate_bases():
            if self._probe(base):
                logger.info(
                    "Detected GitLab API base %s",
                    base,
                    extra={"event_code": "GITLAB_BASE_DETECTED", "repo": self.repo},
                )
                self._detected_base = base
                return base

        raise RemoteCallError(0, "GitLab API not found")

    def project_path(self) -> str:
        """API 경로에 쓸 URL 인코딩된 프로젝트 경로 (group%2Fproject)."""
        base = self.repo_base()
        return quote(self.repo[len(base):].strip("/"), safe="")

    def _api(self, endpoint: str) -> str:
        return f"{self.repo_base()}/api/{self._api_version}{endpoint}"

    def _project_api(self, endpoint: str = "") -> str:
        return self._api(f"/projects/{self.project_path()}{endpoint}")

    # ── 코멘트/체크 ───────────────────────────────────────

    def comment_create(self, report: str, commit_sha: str) -> str:
        self._request(
            "POST",
            self._project_api(f"/repository/commits/{commit_sha}/comments"),
            data={"note": report},
        )
        return f"{self.repo}/-/commit/{commit_sha}"

    def check_create(
        self,
        report: str,
        head_sha: str,
        *,
        title: str | None = None,
        conclusion: str = "success",
        status: str = "completed",
    ) -> str:
        raise self._unsupported("check_create")

    def upload(self, path: Path, *, mime_type: str | None = None) -> UploadResult:
        data, mime, size = fetch_upload_data(path, mime_type)
        result = self._request_json(
            "POST",
            self._project_api("/uploads"),
            files={"file": (path.name, data, mime)},
        )
        return UploadResult(uri=f"{self.repo}{result['url']}", mime=mime, size=size)

    # ── 러너 ───────────────────────────────────────────────

    def runner_token(self) -> str:
        data = self._request_json("GET", self._project_api())
        return data["runners_token"]

    def register_runner(self, name: str, labels: list[str]) -> RunnerRegistration:
        data = self._request_json(
            "POST",
            self._api("/runners"),
            data={
                "description": name,
                "tag_list": ",".join(labels),
                "token": self.runner_token(),
                "locked": "true",
                "run_untagged": "true",
                "access_level": "not_protected",
            },
        )
        logger.info(
            "Registered runner %s (id=%s)",
            name,
            data.get("id"),
            extra={"event_code": "RUNNER_REGISTERED", "runner": name, "driver": self.kind},
        )
        return RunnerRegistration(id=data["id"], token=data["token"])

    def unregister_runner(self, name: str) -> None:
        runner = self.runner_by_name(name)
        if runner is None:
            raise NotFoundError(f"Runner not found: {name}")
        self._request("DELETE", self._api(f"/runners/{runner.id}"))
        logger.info(
            "Unregistered runner %s (id=%d)",
            name,
            runner.id,
            extra={"event_code": "RUNNER_UNREGISTERED", "runner": name, "driver": self.kind},
        )

    @staticmethod
    def _to_runner(item: dict[str, Any]) -> Runner:
        return Runner(
            id=item["id"],
            name=item.get("name") or item.get("description") or "",
            labels=frozenset(item.get("tag_list") or ()),
        )

    def runner_by_name(self, name: str) -> Runner | None:
        items = self._request_json("GET", self._api("/runners"), params={"per_page": 100})
        for item in items or []:
            # description은 이전 버전과의 호환용
            if item.get("name") == name or item.get("description") == name:
                return self._to_runner(item)
        return None

    def runners_by_labels(self, labels: list[str]) -> list[Runner]:
        items = self._request_json(
            "GET",
            self._api("/runners"),
            params={"per_page": 100, "tag_list": ",".join(labels)},
        )
        runners: list[Runner] = []
        for item in items or []:
            # tag_list 필터는 서버가 AND로 적용하지만, 응답에 태그가 있으면 다시 확인
            if "tag_list" in item and not set(labels).issubset(item["tag_list"] or ()):
                continue
            runners.append(self._to_runner(item))
        return runners

    def start_runner(
        self,
        *,
        workdir: Path,
        name: str,
        labels: list[str],
        single: bool = False,
        idle_timeout: int = 300,
    ) -> RunnerProcess:
        """gitlab-runner 바이너리를 준비하고 등록한 뒤 run-single로 띄운다."""
        try:
            workdir.mkdir(parents=True, exist_ok=True)
            binary = workdir / "gitlab-runner"
            if not binary.exists():
                download(self._config.gitlab.runner_download_url, binary)
                make_executable(binary)

            gpu = has_gpu()
            registration = self.register_runner(name, labels)

            cmd = [
                str(binary),
                "--log-format=json",
                "run-single",
                "--builds-dir",
                str(workdir),
                "--cache-dir",
                str(workdir),
                "--url",
                self.repo_base(),
                "--name",
                name,
                "--token",
                registration.token,
                "--wait-timeout",
                str(idle_timeout),
                "--executor",
                "shell" if self._env.get("IN_DOCKER") else "docker",
                "--docker-image",
                self._config.gitlab.docker_image,
            ]
            if gpu:
                cmd += ["--docker-runtime", "nvidia"]
            if single:
                cmd += ["--max-builds", "1"]

            return spawn(cmd, name=name, driver=self.kind, cwd=workdir, env=self._env)
        except (CMLError, OSError, httpx.HTTPError, subprocess.SubprocessError) as exc:
            raise RunnerPreparationError(self.platform, exc) from exc

    # ── MR ─────────────────────────────────────────────────

    def pr_create(self, source: str, target: str, title: str, description: str) -> str:
        data = self._request_json(
            "POST",
            self._project_api("/merge_requests"),
            data={
                "source_branch": source,
                "target_branch": target,
                "title": title,
                "description": description,
            },
        )
        return data["web_url"]

    def prs(
        self,
        state: str | None = None,
        *,
        source: str | None = None,
        target: str | None = None,
    ) -> list[PullRequest]:
        params: dict[str, Any] = {"state": state or "opened"}
        if source:
            params["source_branch"] = source
        if target:
            params["target_branch"] = target
        items = self._request_json("GET", self._project_api("/merge_requests"), params=params)
        return [
            PullRequest(
                url=mr["web_url"],
                source=mr["source_branch"],
                target=mr["target_branch"],
                title=mr.get("title") or "",
                description=mr.get("description") or "",
            )
            for mr in items or []
        ]

    # ── CI 환경 ────────────────────────────────────────────

    @property
    def sha(self) -> str | None:
        return self._env.get("CI_COMMIT_SHA")

    @property
    def branch(self) -> str | None:
        return self._env.get("CI_BUILD_REF_NAME") or self._env.get("CI_COMMIT_REF_NAME")

    @property
    def user_email(self) -> str | None:
        return self._env.get("GITLAB_USER_EMAIL")

    @property
    def user_name(self) -> str | None:
        return self._env.get("GITLAB_USER_NAME")
