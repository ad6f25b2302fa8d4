"""플랫폼 드라이버 공통 계약.

모든 드라이버는 아래 기능을 전부 선언한다. 지원하지 않는 기능은 조용히
무시하지 않고 UnsupportedCapabilityError를 던진다.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar

import httpx

from cml_ci.config import AppConfig
from cml_ci.errors import ConfigurationError, RemoteCallError, UnsupportedCapabilityError
from cml_ci.models import PullRequest, Runner, RunnerRegistration, UploadResult
from cml_ci.process import RunnerProcess

logger = logging.getLogger(__name__)


class Driver(ABC):
    """CI 플랫폼 드라이버 인터페이스.

    인스턴스는 생애 동안 정확히 하나의 (repo, token) 조합에 묶인다.
    """

    kind: ClassVar[str]
    platform: ClassVar[str]

    def __init__(
        self,
        repo: str,
        token: str,
        *,
        config: AppConfig | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not token:
            raise ConfigurationError("token not found")
        if not repo:
            raise ConfigurationError("repo not found")

        self._repo = repo.rstrip("/")
        self._token = token
        self._config = config or AppConfig()
        self._env: dict[str, str] = dict(env) if env is not None else dict(os.environ)
        self._client = httpx.Client(
            headers={"User-Agent": self._config.http.user_agent, **self._auth_headers()},
            timeout=self._config.http.request_timeout_sec,
        )

    @property
    def repo(self) -> str:
        return self._repo

    @property
    def token(self) -> str:
        return self._token

    @abstractmethod
    def _auth_headers(self) -> dict[str, str]:
        """플랫폼별 인증 헤더."""

    # ── HTTP ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """공통 요청 메서드. 재시도하지 않는다.

        Raises:
            RemoteCallError: 전송 실패(status 0) 또는 4xx/5xx 응답
        """
        try:
            resp = self._client.request(
                method, url, params=params, json=json, data=data, files=files
            )
        except httpx.HTTPError as exc:
            raise RemoteCallError(0, f"{self.platform} API request failed: {exc}") from exc

        logger.debug("%s %s -> %d", method, resp.url, resp.status_code)

        if resp.status_code >= 400:
            reason = resp.reason_phrase or f"HTTP {resp.status_code}"
            logger.warning(
                "%s API error %d on %s %s",
                self.platform,
                resp.status_code,
                method,
                resp.url,
                extra={"event_code": "REMOTE_CALL_FAILED", "driver": self.kind},
            )
            raise RemoteCallError(resp.status_code, reason)
        return resp

    def _request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        resp = self._request(method, url, **kwargs)
        return resp.json() if resp.content else None

    def _unsupported(self, capability: str) -> UnsupportedCapabilityError:
        return UnsupportedCapabilityError(self.platform, capability)

    # ── 기능 계약 ─────────────────────────────────────────

    @abstractmethod
    def comment_create(self, report: str, commit_sha: str) -> str:
        """커밋 코멘트를 작성하고 URL을 반환한다."""

    @abstractmethod
    def check_create(
        self,
        report: str,
        head_sha: str,
        *,
        title: str | None = None,
        conclusion: str = "success",
        status: str = "completed",
    ) -> str:
        """체크 런을 생성하고 URL을 반환한다."""

    @abstractmethod
    def upload(self, path: Path, *, mime_type: str | None = None) -> UploadResult:
        """에셋을 업로드한다."""

    @abstractmethod
    def runner_token(self) -> str:
        """러너 등록 토큰을 발급받는다."""

    @abstractmethod
    def register_runner(self, name: str, labels: list[str]) -> RunnerRegistration:
        """러너 등록 토큰을 러너 전용 인증 토큰으로 교환한다."""

    @abstractmethod
    def unregister_runner(self, name: str) -> None:
        """이름으로 러너를 찾아 삭제한다. 없으면 NotFoundError."""

    @abstractmethod
    def runner_by_name(self, name: str) -> Runner | None:
        """이름이 정확히 일치하는 러너. 없으면 None."""

    @abstractmethod
    def runners_by_labels(self, labels: list[str]) -> list[Runner]:
        """요청 라벨을 모두 가진 러너 목록."""

    @abstractmethod
    def start_runner(
        self,
        *,
        workdir: Path,
        name: str,
        labels: list[str],
        single: bool = False,
        idle_timeout: int = 300,
    ) -> RunnerProcess:
        """러너 바이너리를 준비하고 등록 후 프로세스를 띄운다."""

    @abstractmethod
    def pr_create(self, source: str, target: str, title: str, description: str) -> str:
        """PR/MR을 생성하고 URL을 반환한다."""

    @abstractmethod
    def prs(
        self,
        state: str | None = None,
        *,
        source: str | None = None,
        target: str | None = None,
    ) -> list[PullRequest]:
        """PR/MR 목록 (기본: 열린 것).

        source/target을 주면 해당 브랜치 쌍으로 서버에서 걸러서 받는다.
        """

    @property
    @abstractmethod
    def sha(self) -> str | None:
        """CI가 제공한 커밋 SHA."""

    @property
    @abstractmethod
    def branch(self) -> str | None:
        """CI가 제공한 브랜치 이름."""

    @property
    @abstractmethod
    def user_email(self) -> str | None: ...

    @property
    @abstractmethod
    def user_name(self) -> str | None: ...

    # ── 리소스 ──────────────────────────────────────────

    def close(self) -> None:
        """httpx.Client를 종료한다."""
        self._client.close()

    def __enter__(self) -> Driver:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
