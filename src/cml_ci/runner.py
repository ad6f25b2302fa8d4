"""self-hosted 러너 생명주기 관리.

토큰 발급 → 바이너리 준비 → (필요 시) 등록 → spawn 순서는 드라이버의
start_runner가 수행하고, 여기서는 이름 충돌 검사와 해제를 감싼다.
spawn 이후의 프로세스는 호출자 소유다.
"""

from __future__ import annotations

import logging
from pathlib import Path

from cml_ci.drivers.base import Driver
from cml_ci.errors import RunnerNameConflictError
from cml_ci.process import RunnerProcess

logger = logging.getLogger(__name__)


def split_labels(labels: str | list[str] | tuple[str, ...] | None) -> list[str]:
    """"a, b" 또는 리스트 형태의 라벨을 정리된 리스트로 변환한다."""
    if labels is None:
        return []
    items = labels.split(",") if isinstance(labels, str) else list(labels)
    return [label.strip() for label in items if label.strip()]


class RunnerLifecycleManager:
    """드라이버 하나에 대한 러너 시작/해제."""

    def __init__(self, driver: Driver):
        self._driver = driver

    def start(
        self,
        *,
        name: str,
        labels: str | list[str],
        workdir: Path,
        single: bool = False,
        idle_timeout: int = 300,
        reuse: bool = False,
    ) -> RunnerProcess:
        """러너를 준비하고 프로세스 핸들을 반환한다.

        Args:
            name: 러너 이름 (스코프 내 유일)
            labels: 러너 라벨 ("a,b" 또는 리스트)
            workdir: 바이너리/작업 디렉터리
            single: True면 작업 하나만 처리하고 종료
            idle_timeout: 작업 대기 최대 시간(초)
            reuse: 같은 이름의 러너가 이미 있어도 진행

        Raises:
            RunnerNameConflictError: 같은 이름의 러너가 있고 reuse가 아닐 때
            RunnerPreparationError: 준비/등록/spawn 실패
        """
        label_list = split_labels(labels)
        existing = self._driver.runner_by_name(name)
        if existing is not None and not reuse:
            raise RunnerNameConflictError(f"Runner name {name} is already in use (id={existing.id})")

        workdir = workdir.expanduser().resolve()
        logger.info(
            "Starting runner %s labels=%s workdir=%s single=%s idle_timeout=%d",
            name,
            label_list,
            workdir,
            single,
            idle_timeout,
            extra={"event_code": "RUNNER_START", "runner": name, "driver": self._driver.kind},
        )
        process = self._driver.start_runner(
            workdir=workdir,
            name=name,
            labels=label_list,
            single=single,
            idle_timeout=idle_timeout,
        )
        logger.info(
            "Runner %s spawned pid=%s",
            name,
            process.pid,
            extra={"event_code": "RUNNER_SPAWNED", "runner": name, "driver": self._driver.kind},
        )
        return process

    def unregister(self, name: str) -> None:
        """이름으로 러너를 해제한다. 없는 이름이면 NotFoundError."""
        self._driver.unregister_runner(name)
