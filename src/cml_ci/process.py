"""로컬 프로세스 유틸리티.

러너 바이너리 다운로드/압축 해제/실행 권한 부여, 외부 명령 실행,
러너 프로세스 spawn 및 종료 통지를 담당한다.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tarfile
import threading
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path

import httpx

from cml_ci.errors import ProcessError, redact_args
from cml_ci.models import LogEvent

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 65536


def run_command(
    cmd: list[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> str:
    """명령을 실행하고 stdout을 반환한다. 종료 코드가 0이 아니면 ProcessError."""
    proc = subprocess.run(
        cmd,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    if proc.returncode != 0:
        raise ProcessError(cmd, proc.returncode, proc.stderr or "")
    return proc.stdout or ""


def download(url: str, path: Path, *, timeout: float = 120.0) -> Path:
    """URL을 스트리밍으로 받아 path에 저장한다.

    받는 동안은 path 옆의 .part 파일에 쓰고, 끝까지 받은 경우에만 path로
    옮긴다. 중간에 실패하면 .part 파일을 지워 path가 생기지 않는다.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_name(f"{path.name}.part")
    logger.info("Downloading %s -> %s", url, path)
    try:
        with (
            httpx.Client(timeout=timeout, follow_redirects=True) as client,
            client.stream("GET", url) as response,
        ):
            response.raise_for_status()
            with open(partial, "wb") as f:
                for chunk in response.iter_bytes(chunk_size=_CHUNK_SIZE):
                    f.write(chunk)
        partial.replace(path)
    finally:
        partial.unlink(missing_ok=True)
    logger.info("Downloaded %s (%d bytes)", path.name, path.stat().st_size)
    return path


def extract_tarball(archive: Path, destination: Path) -> None:
    """tar.gz 아카이브를 destination에 푼다."""
    with tarfile.open(archive, "r:gz") as tar:
        tar.extractall(destination, filter="data")


def make_executable(path: Path, *, recursive: bool = False) -> None:
    """chmod 777. recursive이면 하위 파일/디렉터리 전체에 적용한다."""
    os.chmod(path, 0o777)
    if recursive and path.is_dir():
        for child in path.rglob("*"):
            if not child.is_symlink():
                os.chmod(child, 0o777)


def has_gpu() -> bool:
    """nvidia-smi 실행 가능 여부로 GPU 유무를 판단한다."""
    try:
        run_command(["nvidia-smi"], timeout=30)
    except (ProcessError, OSError, subprocess.TimeoutExpired):
        return False
    return True


class RunnerProcess:
    """spawn된 러너 프로세스 핸들.

    spawn 이후 생명주기는 관리하지 않는다. 호출자가 원하면 exited 이벤트나
    on_exit 콜백으로 종료를 감시할 수 있다. stdout/stderr는 하나의 파이프로
    합쳐지므로 iter_lines()/iter_events()로 소비해야 한다.
    """

    def __init__(self, process: subprocess.Popen[bytes], *, name: str, driver: str):
        self.process = process
        self.name = name
        self.driver = driver
        self.returncode: int | None = None
        self.exited = threading.Event()
        self._callbacks: list[Callable[[int], None]] = []
        self._lock = threading.Lock()
        self._watcher = threading.Thread(
            target=self._watch, name=f"runner-{name}-watcher", daemon=True
        )
        self._watcher.start()

    @property
    def pid(self) -> int:
        return self.process.pid

    def _watch(self) -> None:
        returncode = self.process.wait()
        with self._lock:
            self.returncode = returncode
            self.exited.set()
            callbacks = list(self._callbacks)
        logger.info(
            "Runner process exited: name=%s pid=%s returncode=%s",
            self.name,
            self.process.pid,
            returncode,
            extra={"event_code": "RUNNER_EXITED", "runner": self.name},
        )
        for callback in callbacks:
            callback(returncode)

    def on_exit(self, callback: Callable[[int], None]) -> None:
        """종료 콜백 등록. 이미 종료된 경우 즉시 호출한다."""
        with self._lock:
            if not self.exited.is_set():
                self._callbacks.append(callback)
                return
            returncode = self.returncode
        callback(returncode)  # type: ignore[arg-type]

    def wait(self, timeout: float | None = None) -> int | None:
        """종료를 기다린다. timeout 내에 끝나지 않으면 None."""
        if not self.exited.wait(timeout):
            return None
        return self.returncode

    def terminate(self) -> None:
        if not self.exited.is_set():
            self.process.terminate()

    def iter_lines(self) -> Iterator[bytes]:
        """합쳐진 출력 스트림을 줄 단위로 yield한다."""
        if self.process.stdout is None:
            return
        for line in self.process.stdout:
            yield line

    def iter_events(self, normalize: Callable[[bytes], LogEvent | None]) -> Iterator[LogEvent]:
        """출력 줄을 정규화 이벤트로 바꿔 yield한다. 인식되지 않는 줄은 건너뛴다."""
        for line in self.iter_lines():
            event = normalize(line)
            if event is not None:
                yield event


def spawn(
    cmd: list[str],
    *,
    name: str,
    driver: str,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> RunnerProcess:
    """러너 실행 파일을 자식 프로세스로 띄우고 핸들을 반환한다."""
    logger.info(
        "Spawning runner: name=%s cmd=%s",
        name,
        " ".join(redact_args(cmd)),
        extra={"event_code": "RUNNER_SPAWN", "runner": name, "driver": driver},
    )
    process = subprocess.Popen(
        cmd,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )
    return RunnerProcess(process, name=name, driver=driver)
