"""공통 fixture."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from cml_ci.config import AppConfig
from cml_ci.drivers.bitbucket import BitbucketCloudDriver
from cml_ci.drivers.github import GitHubDriver
from cml_ci.drivers.gitlab import GitLabDriver

GITHUB_REPO = "https://github.com/iterative/cml"
GITLAB_REPO = "https://gitlab.com/iterative/cml"
BITBUCKET_REPO = "https://bitbucket.org/iterative/cml"


@pytest.fixture()
def app_config() -> AppConfig:
    """기본값 설정 (config.yaml 미사용)."""
    return AppConfig()


@pytest.fixture()
def sample_config_data() -> dict[str, Any]:
    """테스트용 config dict."""
    return {
        "http": {"request_timeout_sec": 5, "user_agent": "cml-ci-test/1.0"},
        "upload": {"endpoint": "https://asset.test", "timeout_sec": 5},
        "runner": {"idle_timeout_sec": 60, "workdir": "/tmp/cml-test"},
        "git": {"remote": "origin", "pr_globs": ["dvc.lock"]},
    }


@pytest.fixture()
def tmp_config_file(tmp_path: Path, sample_config_data: dict[str, Any]) -> Path:
    """임시 YAML 설정 파일."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump(sample_config_data), encoding="utf-8")
    return config_path


@pytest.fixture()
def github_driver(app_config: AppConfig) -> GitHubDriver:
    driver = GitHubDriver(GITHUB_REPO, "ghp_test", config=app_config, env={})
    yield driver
    driver.close()


@pytest.fixture()
def gitlab_driver(app_config: AppConfig) -> GitLabDriver:
    driver = GitLabDriver(GITLAB_REPO, "glpat_test", config=app_config, env={})
    # gitlab.com 루트로 탐색이 끝난 상태
    driver._detected_base = "https://gitlab.com"
    yield driver
    driver.close()


@pytest.fixture()
def bitbucket_driver(app_config: AppConfig) -> BitbucketCloudDriver:
    driver = BitbucketCloudDriver(BITBUCKET_REPO, "bb_test", config=app_config, env={})
    yield driver
    driver.close()
