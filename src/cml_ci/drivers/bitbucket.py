"""Bitbucket Cloud 드라이버 (REST 2.0).

코멘트와 PR만 지원한다. 체크/러너 관련 기능은 UnsupportedCapabilityError.
토큰이 "username:app_password" 형태면 Basic 인증, 아니면 Bearer 인증.
"""

from __future__ import annotations

import base64
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from cml_ci import upload as generic_upload
from cml_ci.config import BITBUCKET, AppConfig
from cml_ci.drivers.base import Driver
from cml_ci.errors import ConfigurationError
from cml_ci.models import PullRequest, Runner, RunnerRegistration, UploadResult
from cml_ci.process import RunnerProcess


class BitbucketCloudDriver(Driver):
    kind = BITBUCKET
    platform = "Bitbucket Cloud"

    def __init__(
        self,
        repo: str,
        token: str,
        *,
        config: AppConfig | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        parts = [p for p in urlsplit(repo or "").path.split("/") if p]
        if repo and len(parts) < 2:
            raise ConfigurationError(f"repo not found: cannot resolve workspace/repo from {repo}")
        super().__init__(repo, token, config=config, env=env)
        self._workspace, self._repo_slug = parts[0], parts[1]
        self._api_base = self._config.bitbucket.api_base.rstrip("/")

    def _auth_headers(self) -> dict[str, str]:
        if ":" in self.token:
            encoded = base64.b64encode(self.token.encode("utf-8")).decode("ascii")
            return {"Authorization": f"Basic {encoded}", "Accept": "application/json"}
        return {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}

    def _repo_url(self, path: str) -> str:
        return f"{self._api_base}/repositories/{self._workspace}/{self._repo_slug}{path}"

    @staticmethod
    def _html_link(data: dict[str, Any]) -> str:
        return data.get("links", {}).get("html", {}).get("href", "")

    def comment_create(self, report: str, commit_sha: str) -> str:
        data = self._request_json(
            "POST",
            self._repo_url(f"/commit/{commit_sha}/comments"),
            json={"content": {"raw": report}},
        )
        return self._html_link(data)

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
        return generic_upload.upload(path, self._config.upload, mime_type=mime_type)

    def runner_token(self) -> str:
        raise self._unsupported("runner_token")

    def register_runner(self, name: str, labels: list[str]) -> RunnerRegistration:
        raise self._unsupported("register_runner")

    def unregister_runner(self, name: str) -> None:
        raise self._unsupported("unregister_runner")

    def runner_by_name(self, name: str) -> Runner | None:
        raise self._unsupported("runner_by_name")

    def runners_by_labels(self, labels: list[str]) -> list[Runner]:
        raise self._unsupported("runners_by_labels")

    def start_runner(
        self,
        *,
        workdir: Path,
        name: str,
        labels: list[str],
        single: bool = False,
        idle_timeout: int = 300,
    ) -> RunnerProcess:
        raise self._unsupported("start_runner")

    def pr_create(self, source: str, target: str, title: str, description: str) -> str:
        data = self._request_json(
            "POST",
            self._repo_url("/pullrequests"),
            json={
                "title": title,
                "description": description,
                "source": {"branch": {"name": source}},
                "destination": {"branch": {"name": target}},
            },
        )
        return self._html_link(data)

    def prs(
        self,
        state: str | None = None,
        *,
        source: str | None = None,
        target: str | None = None,
    ) -> list[PullRequest]:
        params: dict[str, Any] = {"state": state or "OPEN"}
        query = []
        if source:
            query.append(f'source.branch.name = "{source}"')
        if target:
            query.append(f'destination.branch.name = "{target}"')
        if query:
            params["q"] = " AND ".join(query)
        data = self._request_json("GET", self._repo_url("/pullrequests"), params=params)
        return [
            PullRequest(
                url=self._html_link(pr),
                source=pr["source"]["branch"]["name"],
                target=pr["destination"]["branch"]["name"],
                title=pr.get("title") or "",
                description=pr.get("description") or "",
            )
            for pr in (data or {}).get("values", [])
        ]

    @property
    def sha(self) -> str | None:
        return self._env.get("BITBUCKET_COMMIT")

    @property
    def branch(self) -> str | None:
        return self._env.get("BITBUCKET_BRANCH")

    @property
    def user_email(self) -> str | None:
        return None

    @property
    def user_name(self) -> str | None:
        return None
