"""cml-ci 예외 계층."""

from __future__ import annotations


class CMLError(Exception):
    """cml-ci 공통 예외."""


class ConfigurationError(CMLError):
    """repo/token/driver 설정 오류. 재시도하지 않는다."""


class UnsupportedCapabilityError(CMLError):
    """플랫폼이 지원하지 않는 기능 호출."""

    def __init__(self, platform: str, capability: str):
        self.platform = platform
        self.capability = capability
        super().__init__(f"{platform} does not support {capability}!")


class RemoteCallError(CMLError):
    """플랫폼 REST API 호출 실패.

    status_code 0은 응답을 받지 못한 전송 계층 오류를 뜻한다.
    """

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(CMLError):
    """반드시 존재해야 하는 리소스를 찾지 못함."""


class RunnerNameConflictError(CMLError):
    """같은 이름의 러너가 이미 등록되어 있음."""


class RunnerPreparationError(CMLError):
    """러너 바이너리 준비/등록/실행 단계 실패."""

    def __init__(self, platform: str, cause: BaseException | str):
        self.platform = platform
        super().__init__(f"Failed preparing {platform} runner: {cause}")


def redact_args(cmd: list[str]) -> list[str]:
    """--token 다음 인자를 가린다."""
    redacted: list[str] = []
    hide_next = False
    for arg in cmd:
        if hide_next:
            redacted.append("***")
            hide_next = False
            continue
        redacted.append(arg)
        hide_next = arg == "--token"
    return redacted


class ProcessError(CMLError):
    """로컬 명령 실행 실패."""

    def __init__(self, cmd: list[str], exit_code: int, stderr: str):
        self.cmd = cmd
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            f"Command failed ({exit_code}): {' '.join(redact_args(cmd))}\nstderr: {stderr.strip()}"
        )


class GitCommandError(ProcessError):
    """git 명령 실패 (동시 실행으로 인한 push 충돌 포함)."""
