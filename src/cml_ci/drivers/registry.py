"""드라이버 종류 → 드라이버 클래스 매핑."""

from __future__ import annotations

from collections.abc import Mapping

from cml_ci.config import BITBUCKET, GITHUB, GITLAB, AppConfig, DriverConfig
from cml_ci.drivers.base import Driver
from cml_ci.drivers.bitbucket import BitbucketCloudDriver
from cml_ci.drivers.github import GitHubDriver
from cml_ci.drivers.gitlab import GitLabDriver
from cml_ci.errors import ConfigurationError

_DRIVERS: dict[str, type[Driver]] = {
    GITHUB: GitHubDriver,
    GITLAB: GitLabDriver,
    BITBUCKET: BitbucketCloudDriver,
}


def get_driver(
    settings: DriverConfig,
    *,
    config: AppConfig | None = None,
    env: Mapping[str, str] | None = None,
) -> Driver:
    """드라이버 설정에 맞는 드라이버 인스턴스를 만든다."""
    driver_cls = _DRIVERS.get(settings.driver)
    if driver_cls is None:
        raise ConfigurationError(f"driver {settings.driver} unknown!")
    return driver_cls(settings.repo, settings.token, config=config, env=env)

