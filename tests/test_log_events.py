"""러너 로그 정규화 테스트."""

from __future__ import annotations

import logging

import pytest

from cml_ci.log_events import parse_runner_log

REPO = "https://github.com/iterative/cml"


class TestGitHubLogs:
    def test_job_started(self) -> None:
        event = parse_runner_log(b"2024-01-01 00:00:00Z: Running job: train\n", "github", REPO)
        assert event is not None
        assert event.status == "job_started"
        assert event.repo == REPO
        assert event.success is None

    def test_job_succeeded(self) -> None:
        event = parse_runner_log("Job 42 completed with result: Succeeded", "github", REPO)
        assert event is not None
        assert event.status == "job_ended"
        assert event.success is True
        assert event.level == "info"

    def test_job_failed(self) -> None:
        event = parse_runner_log("Job 42 completed with result: Failed", "github", REPO)
        assert event is not None
        assert event.success is False
        assert event.level == "error"

    def test_ready(self) -> None:
        event = parse_runner_log(b"Listening for Jobs", "github", REPO)
        assert event is not None
        assert event.status == "ready"

    def test_unrecognized_line(self) -> None:
        assert parse_runner_log(b"Connected to GitHub", "github", REPO) is None


class TestGitLabLogs:
    def test_job_received(self) -> None:
        line = b'{"level":"info","msg":"Checking for jobs... received","job":7}'
        event = parse_runner_log(line, "gitlab", REPO)
        assert event is not None
        assert event.status == "job_started"
        assert event.job == 7

    def test_job_failed(self) -> None:
        event = parse_runner_log(b'{"msg":"Job failed","job":7}', "gitlab", REPO)
        assert event is not None
        assert event.status == "job_ended"
        assert event.success is False
        assert event.level == "error"
        assert event.job == 7

    def test_job_succeeded(self) -> None:
        event = parse_runner_log(b'{"msg":"Job succeeded","job":7}', "gitlab", REPO)
        assert event is not None
        assert event.success is True
        assert event.level == "info"

    def test_ready(self) -> None:
        line = b'{"msg":"Starting runner for https://gitlab.com with token abc ..."}'
        event = parse_runner_log(line, "gitlab", REPO)
        assert event is not None
        assert event.status == "ready"
        assert event.job is None

    def test_unrecognized_message(self) -> None:
        assert parse_runner_log(b'{"msg":"Feeding runners to builder"}', "gitlab", REPO) is None

    @pytest.mark.parametrize(
        "line",
        [
            b"not json",
            b'{"job": 7}',
            b"[1, 2]",
            b'{"msg":"Job failed","job":{"id":7}}',
            b'{"msg":"Job failed","job":[7]}',
            b'{"msg":"Job succeeded","job":7.5}',
        ],
    )
    def test_malformed_returns_none(self, line: bytes, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="cml_ci.log_events"):
            assert parse_runner_log(line, "gitlab", REPO) is None
        assert "Failed parsing log" in caplog.text


class TestEdgeCases:
    @pytest.mark.parametrize("data", [None, b"", ""])
    def test_empty_input(self, data: bytes | str | None) -> None:
        assert parse_runner_log(data, "github", REPO) is None

    def test_invalid_utf8(self) -> None:
        assert parse_runner_log(b"\xff\xfe Running job", "github", REPO) is None

    def test_other_driver_has_no_vocabulary(self) -> None:
        assert parse_runner_log(b"Running job", "bitbucket", REPO) is None
