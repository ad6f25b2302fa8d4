"""러너 로그 한 줄 → LogEvent 정규화.

줄 단위 상태 없는 분류기다. ready → job_started → job_ended 순서를
추론하거나 강제하지 않는다. 인식 실패는 로그만 남기고 None을 반환한다.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import orjson
from pydantic import ValidationError

from cml_ci.config import GITHUB, GITLAB
from cml_ci.models import LogEvent

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _parse_github(line: str, repo: str) -> LogEvent | None:
    if "Running job" in line:
        return LogEvent(time=_now(), repo=repo, job="", status="job_started")

    if "Job" in line and "completed with result" in line:
        success = line.endswith("Succeeded")
        return LogEvent(
            level="info" if success else "error",
            time=_now(),
            repo=repo,
            job="",
            status="job_ended",
            success=success,
        )

    if "Listening for Jobs" in line:
        return LogEvent(time=_now(), repo=repo, status="ready")

    return None


def _parse_gitlab(line: str, repo: str) -> LogEvent | None:
    record = orjson.loads(line)
    msg = record["msg"]
    job = record.get("job")

    if msg.endswith("received"):
        return LogEvent(time=_now(), repo=repo, job=job, status="job_started")

    if msg.startswith("Job failed") or msg.startswith("Job succeeded"):
        success = not msg.startswith("Job failed")
        return LogEvent(
            level="info" if success else "error",
            time=_now(),
            repo=repo,
            job=job,
            status="job_ended",
            success=success,
        )

    if "Starting runner for" in msg:
        return LogEvent(time=_now(), repo=repo, status="ready")

    return None


def parse_runner_log(data: bytes | str | None, driver: str, repo: str) -> LogEvent | None:
    """러너 프로세스 출력 한 줄을 드라이버별 어휘로 분류한다.

    Args:
        data: 러너 출력 한 줄 (bytes면 UTF-8로 디코딩)
        driver: 드라이버 종류 (github/gitlab). 그 외는 항상 None
        repo: 이벤트에 실을 저장소 URL

    Returns:
        인식된 LogEvent, 인식하지 못했거나 입력이 깨졌으면 None
    """
    if not data:
        return None

    try:
        line = data.decode("utf-8") if isinstance(data, bytes) else data
        line = line.rstrip()

        if driver == GITHUB:
            return _parse_github(line, repo)
        if driver == GITLAB:
            return _parse_gitlab(line, repo)
    except (
        UnicodeDecodeError,
        orjson.JSONDecodeError,
        ValidationError,
        KeyError,
        TypeError,
        AttributeError,
    ) as exc:
        logger.warning(
            "Failed parsing log: %s",
            exc,
            extra={"event_code": "LOG_PARSE_FAILED", "driver": driver},
        )
    return None
