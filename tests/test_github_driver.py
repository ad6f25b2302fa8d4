"""GitHub 드라이버 테스트."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest
from pytest_httpx import HTTPXMock

from cml_ci.config import AppConfig
from cml_ci.drivers.github import GitHubDriver, owner_repo
from cml_ci.errors import (
    ConfigurationError,
    NotFoundError,
    ProcessError,
    RemoteCallError,
    RunnerPreparationError,
    UnsupportedCapabilityError,
)

API = "https://api.github.com/repos/iterative/cml"


def _runners_payload() -> dict:
    return {
        "total_count": 2,
        "runners": [
            {"id": 1, "name": "cml-a", "labels": [{"name": "a"}]},
            {"id": 2, "name": "cml-ab", "labels": [{"name": "a"}, {"name": "b"}]},
        ],
    }


class TestGitHubDriverInit:
    def test_missing_token(self, app_config: AppConfig) -> None:
        with pytest.raises(ConfigurationError, match="token not found"):
            GitHubDriver("https://github.com/iterative/cml", "", config=app_config, env={})

    def test_missing_repo(self, app_config: AppConfig) -> None:
        with pytest.raises(ConfigurationError, match="repo not found"):
            GitHubDriver("", "t", config=app_config, env={})

    def test_repo_without_owner(self, app_config: AppConfig) -> None:
        with pytest.raises(ConfigurationError, match="repo not found"):
            GitHubDriver("https://github.com/", "t", config=app_config, env={})

    def test_enterprise_api_base(self, app_config: AppConfig) -> None:
        driver = GitHubDriver("https://ghe.corp/team/repo", "t", config=app_config, env={})
        assert driver.api_base == "https://ghe.corp/api/v3"
        driver.close()

    def test_owner_repo_falls_back_to_env(self) -> None:
        assert owner_repo(None, {"GITHUB_REPOSITORY": "iterative/cml"}) == ("iterative", "cml")


class TestComments:
    def test_comment_create(self, github_driver: GitHubDriver, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=f"{API}/commits/abc123/comments",
            json={"html_url": "https://github.com/iterative/cml/commit/abc123#c1"},
        )
        url = github_driver.comment_create("## report", "abc123")

        assert url == "https://github.com/iterative/cml/commit/abc123#c1"
        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer ghp_test"
        assert json.loads(request.content) == {"body": "## report"}

    def test_check_create_uses_default_title(
        self, github_driver: GitHubDriver, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            method="POST",
            url=f"{API}/check-runs",
            json={"html_url": "https://github.com/iterative/cml/runs/9"},
        )
        url = github_driver.check_create("report", "abc123", conclusion="failure")

        assert url == "https://github.com/iterative/cml/runs/9"
        body = json.loads(httpx_mock.get_request().content)
        assert body["name"] == "CML Report"
        assert body["head_sha"] == "abc123"
        assert body["conclusion"] == "failure"
        assert body["output"]["summary"] == "report"

    def test_http_error_is_remote_call_error(
        self, github_driver: GitHubDriver, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            method="POST", url=f"{API}/commits/abc123/comments", status_code=404
        )
        with pytest.raises(RemoteCallError, match="Not Found") as exc_info:
            github_driver.comment_create("x", "abc123")
        assert exc_info.value.status_code == 404

    def test_transport_error_has_status_zero(
        self, github_driver: GitHubDriver, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))
        with pytest.raises(RemoteCallError) as exc_info:
            github_driver.comment_create("x", "abc123")
        assert exc_info.value.status_code == 0


class TestRunners:
    def test_runner_token(self, github_driver: GitHubDriver, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=f"{API}/actions/runners/registration-token",
            json={"token": "AABBCC", "expires_at": "2024-01-01T00:00:00Z"},
        )
        assert github_driver.runner_token() == "AABBCC"

    def test_org_scope_when_repo_has_only_owner(
        self, app_config: AppConfig, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            method="POST",
            url="https://api.github.com/orgs/iterative/actions/runners/registration-token",
            json={"token": "ORG"},
        )
        with GitHubDriver("https://github.com/iterative", "t", config=app_config, env={}) as driver:
            assert driver.runner_token() == "ORG"

    def test_runner_by_name(self, github_driver: GitHubDriver, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            url=f"{API}/actions/runners?per_page=100", json=_runners_payload()
        )
        runner = github_driver.runner_by_name("cml-ab")

        assert runner is not None
        assert runner.id == 2
        assert runner.labels == frozenset({"a", "b"})

    def test_runner_by_name_missing(
        self, github_driver: GitHubDriver, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            url=f"{API}/actions/runners?per_page=100", json=_runners_payload()
        )
        assert github_driver.runner_by_name("nope") is None

    def test_runners_by_labels_is_and(
        self, github_driver: GitHubDriver, httpx_mock: HTTPXMock
    ) -> None:
        """{a}만 가진 러너는 [a, b] 조회에서 제외된다."""
        httpx_mock.add_response(
            url=f"{API}/actions/runners?per_page=100", json=_runners_payload()
        )
        runners = github_driver.runners_by_labels(["a", "b"])
        assert [r.name for r in runners] == ["cml-ab"]

    def test_unregister_runner(self, github_driver: GitHubDriver, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            url=f"{API}/actions/runners?per_page=100", json=_runners_payload()
        )
        httpx_mock.add_response(method="DELETE", url=f"{API}/actions/runners/1", status_code=204)

        github_driver.unregister_runner("cml-a")

        assert httpx_mock.get_requests()[-1].method == "DELETE"

    def test_unregister_unknown_runner(
        self, github_driver: GitHubDriver, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            url=f"{API}/actions/runners?per_page=100", json={"total_count": 0, "runners": []}
        )
        with pytest.raises(NotFoundError):
            github_driver.unregister_runner("ghost")

    def test_register_runner_unsupported(self, github_driver: GitHubDriver) -> None:
        with pytest.raises(UnsupportedCapabilityError, match="GitHub does not support register_runner!"):
            github_driver.register_runner("x", ["a"])


_MOCK_DOWNLOAD = "cml_ci.drivers.github.download"
_MOCK_EXTRACT = "cml_ci.drivers.github.extract_tarball"
_MOCK_CHMOD = "cml_ci.drivers.github.make_executable"
_MOCK_RUN = "cml_ci.drivers.github.run_command"
_MOCK_SPAWN = "cml_ci.drivers.github.spawn"


class TestStartRunner:
    def _mock_token(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=f"{API}/actions/runners/registration-token",
            json={"token": "REG"},
        )

    def test_downloads_configures_and_spawns(
        self, github_driver: GitHubDriver, httpx_mock: HTTPXMock, tmp_path: Path
    ) -> None:
        self._mock_token(httpx_mock)
        (tmp_path / ".runner").write_text("{}", encoding="utf-8")
        handle = MagicMock()

        with (
            patch(_MOCK_DOWNLOAD) as mock_download,
            patch(_MOCK_EXTRACT) as mock_extract,
            patch(_MOCK_CHMOD),
            patch(_MOCK_RUN) as mock_run,
            patch(_MOCK_SPAWN, return_value=handle) as mock_spawn,
        ):
            result = github_driver.start_runner(
                workdir=tmp_path, name="cml-1", labels=["cml", "gpu"], single=True
            )

        assert result is handle
        assert not (tmp_path / ".runner").exists()
        assert "actions-runner-" in mock_download.call_args.args[0]
        mock_extract.assert_called_once()

        config_cmd = mock_run.call_args.args[0]
        assert config_cmd[0] == str(tmp_path / "config.sh")
        assert config_cmd[config_cmd.index("--token") + 1] == "REG"
        assert config_cmd[config_cmd.index("--labels") + 1] == "cml,gpu"
        assert config_cmd[config_cmd.index("--url") + 1] == "https://github.com/iterative/cml"

        run_cmd = mock_spawn.call_args.args[0]
        assert run_cmd == [str(tmp_path / "run.sh"), "--once"]
        assert mock_spawn.call_args.kwargs["env"]["RUNNER_ALLOW_RUNASROOT"] == "1"

    def test_skips_download_when_present(
        self, github_driver: GitHubDriver, httpx_mock: HTTPXMock, tmp_path: Path
    ) -> None:
        self._mock_token(httpx_mock)
        (tmp_path / "config.sh").write_text("#!/bin/sh\n", encoding="utf-8")

        with (
            patch(_MOCK_DOWNLOAD) as mock_download,
            patch(_MOCK_RUN),
            patch(_MOCK_SPAWN) as mock_spawn,
        ):
            github_driver.start_runner(workdir=tmp_path, name="cml-1", labels=["cml"])

        mock_download.assert_not_called()
        assert mock_spawn.call_args.args[0] == [str(tmp_path / "run.sh")]

    def test_config_failure_wrapped(
        self, github_driver: GitHubDriver, httpx_mock: HTTPXMock, tmp_path: Path
    ) -> None:
        self._mock_token(httpx_mock)
        (tmp_path / "config.sh").write_text("#!/bin/sh\n", encoding="utf-8")
        failure = ProcessError(["config.sh"], 1, "already configured")

        with (
            patch(_MOCK_RUN, side_effect=failure),
            patch(_MOCK_SPAWN) as mock_spawn,
            pytest.raises(RunnerPreparationError, match="Failed preparing GitHub runner") as exc_info,
        ):
            github_driver.start_runner(workdir=tmp_path, name="cml-1", labels=["cml"])

        assert exc_info.value.__cause__ is failure
        mock_spawn.assert_not_called()


class TestPullRequests:
    def test_pr_create(self, github_driver: GitHubDriver, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            method="POST",
            url=f"{API}/pulls",
            json={"html_url": "https://github.com/iterative/cml/pull/5"},
        )
        url = github_driver.pr_create("main-cml-pr-abcdef12", "main", "title", "desc")

        assert url == "https://github.com/iterative/cml/pull/5"
        body = json.loads(httpx_mock.get_request().content)
        assert body == {
            "head": "main-cml-pr-abcdef12",
            "base": "main",
            "title": "title",
            "body": "desc",
        }

    def test_prs(self, github_driver: GitHubDriver, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            url=f"{API}/pulls?state=open&per_page=100",
            json=[
                {
                    "html_url": "https://github.com/iterative/cml/pull/5",
                    "head": {"ref": "main-cml-pr-abcdef12"},
                    "base": {"ref": "main"},
                    "title": "CML PR",
                    "body": None,
                }
            ],
        )
        prs = github_driver.prs()

        assert len(prs) == 1
        assert prs[0].source == "main-cml-pr-abcdef12"
        assert prs[0].target == "main"
        assert prs[0].description == ""

    def test_prs_filtered_by_branches(
        self, github_driver: GitHubDriver, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            url=f"{API}/pulls?state=open&per_page=100&head=iterative%3Amain-cml-pr-abcdef12&base=main",
            json=[
                {
                    "html_url": "https://github.com/iterative/cml/pull/5",
                    "head": {"ref": "main-cml-pr-abcdef12"},
                    "base": {"ref": "main"},
                }
            ],
        )
        prs = github_driver.prs(source="main-cml-pr-abcdef12", target="main")

        assert [pr.url for pr in prs] == ["https://github.com/iterative/cml/pull/5"]


class TestCiEnvironment:
    def test_sha_from_pull_request_payload(self, app_config: AppConfig, tmp_path: Path) -> None:
        event_path = tmp_path / "event.json"
        event_path.write_text(
            json.dumps({"pull_request": {"head": {"sha": "prhead"}}}), encoding="utf-8"
        )
        env = {
            "GITHUB_EVENT_NAME": "pull_request",
            "GITHUB_EVENT_PATH": str(event_path),
            "GITHUB_SHA": "merge",
            "GITHUB_HEAD_REF": "feature",
        }
        with GitHubDriver("https://github.com/a/b", "t", config=app_config, env=env) as driver:
            assert driver.sha == "prhead"
            assert driver.branch == "feature"

    def test_push_event(self, app_config: AppConfig) -> None:
        env = {"GITHUB_SHA": "abc", "GITHUB_REF": "refs/heads/main"}
        with GitHubDriver("https://github.com/a/b", "t", config=app_config, env=env) as driver:
            assert driver.sha == "abc"
            assert driver.branch == "main"
            assert driver.user_email == "action@github.com"
