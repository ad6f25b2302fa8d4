"""click CLI 엔트리포인트.

cml send-comment report.md
cml publish plot.png --md --title "loss"
cml pr "*.dvc" --md
cml runner --name gpu-1 --labels cml,gpu --single
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click
import orjson

from cml_ci.config import DRIVER_KINDS, GITHUB, load_config
from cml_ci.errors import CMLError
from cml_ci.logging_config import setup_logging
from cml_ci.orchestrator import CML
from cml_ci.pr import PrOutcome
from cml_ci.process import RunnerProcess

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _build_cml(ctx: click.Context) -> CML:
    """전역 옵션으로 CML 파사드를 만든다."""
    opts: dict[str, Any] = ctx.obj
    return CML(
        repo=opts["repo"],
        token=opts["token"],
        driver=opts["driver"],
        config=load_config(opts["config_path"]),
    )


def _run(ctx: click.Context, action: Callable[[CML], T]) -> T:
    """CML을 만들어 action을 실행한다. CMLError는 로그 후 종료 코드 1."""
    try:
        with _build_cml(ctx) as cml:
            return action(cml)
    except CMLError as exc:
        logger.error("%s", exc, extra={"event_code": "COMMAND_FAILED"})
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0", prog_name="cml")
@click.option("--repo", default=None, help="저장소 URL (기본: CI 환경변수 또는 git remote)")
@click.option("--token", default=None, help="플랫폼 토큰 (기본: REPO_TOKEN 등 환경변수)")
@click.option(
    "--driver",
    type=click.Choice(DRIVER_KINDS),
    default=None,
    help="플랫폼 드라이버 (기본: 저장소 호스트로 추론)",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, path_type=Path),
    help="설정 파일 경로 (기본: 프로젝트 루트 config.yaml)",
)
@click.option("--json-log/--no-json-log", default=True, help="JSON 로그 포맷 (기본: 활성)")
@click.pass_context
def main(
    ctx: click.Context,
    repo: str | None,
    token: str | None,
    driver: str | None,
    config_path: Path | None,
    json_log: bool,
) -> None:
    """CML - CI 플랫폼에 리포트/에셋/PR/러너 작업을 수행합니다."""
    setup_logging(json_format=json_log)
    ctx.obj = {
        "repo": repo,
        "token": token,
        "driver": driver,
        "config_path": config_path,
    }


@main.command("send-comment")
@click.argument("markdown_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--commit-sha", "--head-sha", "commit_sha", default=None, help="코멘트할 커밋 SHA")
@click.option("--rm-watermark", is_flag=True, help="워터마크를 붙이지 않음")
@click.pass_context
def send_comment(
    ctx: click.Context, markdown_file: Path, commit_sha: str | None, rm_watermark: bool
) -> None:
    """마크다운 리포트를 커밋 코멘트로 남깁니다."""
    report = markdown_file.read_text(encoding="utf-8")
    url = _run(
        ctx, lambda cml: cml.comment_create(report, commit_sha, rm_watermark=rm_watermark)
    )
    click.echo(url)


@main.command("send-github-check")
@click.argument("markdown_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--head-sha", default=None, help="체크를 붙일 커밋 SHA")
@click.option("--title", default=None, help="체크 제목 (기본: 설정의 check_title)")
@click.option(
    "--conclusion",
    type=click.Choice(
        ["success", "failure", "neutral", "cancelled", "skipped", "timed_out", "action_required"]
    ),
    default="success",
    help="체크 결론",
)
@click.pass_context
def send_github_check(
    ctx: click.Context,
    markdown_file: Path,
    head_sha: str | None,
    title: str | None,
    conclusion: str,
) -> None:
    """마크다운 리포트를 GitHub 체크 런으로 남깁니다."""
    report = markdown_file.read_text(encoding="utf-8")
    url = _run(
        ctx,
        lambda cml: cml.check_create(report, head_sha, title=title, conclusion=conclusion),
    )
    click.echo(url)


@main.command()
@click.argument("asset", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--md", is_flag=True, help="마크다운으로 출력")
@click.option("--title", default="", help="마크다운 제목")
@click.option("--native", is_flag=True, help="플랫폼 자체 업로드 사용")
@click.option("--mime-type", default=None, help="MIME 타입 (기본: 확장자로 추론)")
@click.option("--rm-watermark", is_flag=True, help="URI에 워터마크 쿼리를 붙이지 않음")
@click.pass_context
def publish(
    ctx: click.Context,
    asset: Path,
    md: bool,
    title: str,
    native: bool,
    mime_type: str | None,
    rm_watermark: bool,
) -> None:
    """에셋을 업로드하고 URL(또는 마크다운)을 출력합니다."""
    output = _run(
        ctx,
        lambda cml: cml.publish(
            asset,
            md=md,
            title=title,
            native=native,
            mime_type=mime_type,
            rm_watermark=rm_watermark,
        ),
    )
    click.echo(output)


@main.command()
@click.argument("globs", nargs=-1)
@click.option("--md", is_flag=True, help="마크다운 링크로 출력")
@click.option("--remote", default=None, help="push할 git remote (기본: 설정의 git.remote)")
@click.option("--user-email", default=None, help="커밋 작성자 이메일")
@click.option("--user-name", default=None, help="커밋 작성자 이름")
@click.pass_context
def pr(
    ctx: click.Context,
    globs: tuple[str, ...],
    md: bool,
    remote: str | None,
    user_email: str | None,
    user_name: str | None,
) -> None:
    """변경된 파일을 커밋해 PR/MR을 엽니다. 이미 있으면 기존 PR을 반환합니다."""
    result = _run(
        ctx,
        lambda cml: cml.pr_create(
            globs, md=md, remote=remote, user_email=user_email, user_name=user_name
        ),
    )
    if isinstance(result, PrOutcome):
        if result.url:
            click.echo(result.url)
    elif result:
        click.echo(result)


def _stream_events(cml: CML, process: RunnerProcess) -> int:
    """러너 출력을 정규화 이벤트 JSON 줄로 내보내고 종료 코드를 반환한다."""
    try:
        for event in process.iter_events(cml.parse_runner_log):
            click.echo(orjson.dumps(event.model_dump(mode="json")).decode("utf-8"))
    except KeyboardInterrupt:
        logger.info("Interrupted, terminating runner %s", process.name)
        process.terminate()
    returncode = process.wait()
    return returncode if returncode is not None else 1


def _cleanup_runner(cml: CML, name: str) -> None:
    try:
        cml.unregister_runner(name)
    except CMLError as exc:
        logger.warning(
            "Failed unregistering runner %s: %s",
            name,
            exc,
            extra={"event_code": "RUNNER_CLEANUP_FAILED", "runner": name},
        )


@main.command()
@click.option("--name", required=True, help="러너 이름")
@click.option("--labels", default="cml", help="쉼표로 구분한 러너 라벨 (기본: cml)")
@click.option("--single", is_flag=True, help="작업 하나만 처리하고 종료")
@click.option("--idle-timeout", type=int, default=None, help="작업 대기 최대 시간(초)")
@click.option("--workdir", type=click.Path(path_type=Path), default=None, help="러너 작업 디렉터리")
@click.option("--reuse", is_flag=True, help="같은 이름의 러너가 있어도 진행")
@click.pass_context
def runner(
    ctx: click.Context,
    name: str,
    labels: str,
    single: bool,
    idle_timeout: int | None,
    workdir: Path | None,
    reuse: bool,
) -> None:
    """self-hosted 러너를 띄우고 종료 시 등록을 해제합니다."""

    def action(cml: CML) -> int:
        if cml.driver.kind == GITHUB:
            cml.repo_token_check()
        process = cml.start_runner(
            name=name,
            labels=labels,
            workdir=workdir,
            single=single,
            idle_timeout=idle_timeout,
            reuse=reuse,
        )
        try:
            return _stream_events(cml, process)
        finally:
            _cleanup_runner(cml, name)

    returncode = _run(ctx, action)
    if returncode != 0:
        sys.exit(returncode)


@main.command("unregister-runner")
@click.option("--name", required=True, help="해제할 러너 이름")
@click.pass_context
def unregister_runner(ctx: click.Context, name: str) -> None:
    """이름으로 러너 등록을 해제합니다."""
    _run(ctx, lambda cml: cml.unregister_runner(name))
    click.echo(f"Unregistered runner {name}")


if __name__ == "__main__":
    main()
