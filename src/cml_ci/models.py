"""플랫폼 공통 데이터 모델 (Pydantic).

드라이버는 플랫폼 고유 응답을 반드시 이 모델로 변환해서 돌려준다.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

LogLevel = Literal["info", "error"]
LogStatus = Literal["job_started", "job_ended", "ready"]


class Runner(BaseModel):
    """self-hosted 러너.

    - id는 플랫폼이 부여한 식별자
    - name은 호출자가 정한 조회 키 (스코프 내에서 유일)
    """

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    labels: frozenset[str] = Field(default_factory=frozenset)

    def has_labels(self, labels: list[str] | set[str] | tuple[str, ...]) -> bool:
        """요청한 라벨을 모두 가지고 있는지 (AND)."""
        return set(labels).issubset(self.labels)


class PullRequest(BaseModel):
    url: str
    source: str
    target: str
    title: str = ""
    description: str = ""


class LogEvent(BaseModel):
    """러너 출력 한 줄에서 유도된 정규화 이벤트."""

    level: LogLevel = "info"
    time: datetime
    repo: str
    job: str | int | None = None
    status: LogStatus
    success: bool | None = None

    @model_validator(mode="after")
    def success_only_when_ended(self) -> LogEvent:
        if self.status != "job_ended" and self.success is not None:
            raise ValueError("success is only defined for job_ended events")
        return self


class UploadResult(BaseModel):
    uri: str
    mime: str
    size: int


class RunnerRegistration(BaseModel):
    """러너 등록 결과. token은 러너 프로세스 전용 인증 토큰."""

    id: int
    token: str
