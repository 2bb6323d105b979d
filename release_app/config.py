"""Application configuration for the release pipeline."""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import ConfigError


DEFAULT_ANALYZER_COMMAND: tuple[str, ...] = ("npx", "semantic-release", "--dry-run")
DEFAULT_VERIFY_COMMAND: tuple[str, ...] = ("cargo", "test", "--release", "--all-features")
DEFAULT_PUBLISH_COMMAND: tuple[str, ...] = ("cargo", "publish", "--allow-dirty")


@dataclass
class ManifestConfig:
    """Location of the version-bearing manifest."""

    path: Path = Path("Cargo.toml")


@dataclass
class AnalyzerConfig:
    """External commit analyzer invocation."""

    command: tuple[str, ...] = DEFAULT_ANALYZER_COMMAND
    timeout: int = 300


@dataclass
class VerifyConfig:
    """Verification (test suite) invocation."""

    command: tuple[str, ...] = DEFAULT_VERIFY_COMMAND
    timeout: int = 3600
    workdir: Path = Path(".")


@dataclass
class VcsConfig:
    """GitHub release settings."""

    repo: str | None = None
    token: str | None = None
    api_url: str = "https://api.github.com"
    tag_prefix: str = "v"
    target_commitish: str | None = None
    timeout: int = 30
    retry_attempts: int = 3

    def require_token(self) -> str:
        if not self.token:
            raise ConfigError("GITHUB_TOKEN environment variable is required to publish a release")
        if not self.repo:
            raise ConfigError("GITHUB_REPOSITORY (owner/name) is required to publish a release")
        return self.token


@dataclass
class RegistryConfig:
    """Package registry upload settings."""

    command: tuple[str, ...] = DEFAULT_PUBLISH_COMMAND
    token: str | None = None
    token_env: str = "CARGO_REGISTRY_TOKEN"
    timeout: int = 1800
    workdir: Path = Path(".")

    def command_env(self) -> dict[str, str]:
        """Environment passed to the publish command; the token never goes on argv."""

        if not self.token:
            raise ConfigError(f"{self.token_env} environment variable is required to publish a package")
        return {self.token_env: self.token}


@dataclass
class ArtifactConfig:
    """Where per-run artifacts and run records live between stages."""

    store_dir: Path = Path(".release/artifacts")
    retention_days: int = 1


@dataclass
class AppConfig:
    """Top level configuration container."""

    manifest: ManifestConfig = field(default_factory=ManifestConfig)
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    vcs: VcsConfig = field(default_factory=VcsConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    artifacts: ArtifactConfig = field(default_factory=ArtifactConfig)

    @classmethod
    def create_default(cls) -> "AppConfig":
        """Create a default configuration instance."""

        return cls()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        """Create a configuration seeded from CI environment variables."""

        env = os.environ if environ is None else environ
        config = cls()
        config.vcs.token = env.get("GITHUB_TOKEN") or None
        config.vcs.repo = env.get("GITHUB_REPOSITORY") or None
        config.vcs.api_url = env.get("GITHUB_API_URL") or config.vcs.api_url
        config.vcs.target_commitish = env.get("GITHUB_SHA") or None
        config.registry.token = env.get(config.registry.token_env) or None
        if env.get("RELEASE_STORE_DIR"):
            config.artifacts.store_dir = Path(env["RELEASE_STORE_DIR"])
        if env.get("RELEASE_RETENTION_DAYS"):
            config.artifacts.retention_days = _parse_days(env["RELEASE_RETENTION_DAYS"])
        if env.get("RELEASE_MANIFEST"):
            config.manifest.path = Path(env["RELEASE_MANIFEST"])
        if env.get("RELEASE_VERIFY_CMD"):
            config.verify.command = parse_command(env["RELEASE_VERIFY_CMD"])
        if env.get("RELEASE_PUBLISH_CMD"):
            config.registry.command = parse_command(env["RELEASE_PUBLISH_CMD"])
        return config


def _parse_days(value: str) -> int:
    try:
        days = int(value)
    except ValueError:
        days = -1
    if days < 0:
        raise ConfigError("RELEASE_RETENTION_DAYS must be a non-negative integer", context={"value": value})
    return days


def parse_command(value: str) -> tuple[str, ...]:
    """Split a shell-style command string into argv."""

    parts = tuple(shlex.split(value))
    if not parts:
        raise ConfigError("Command must not be empty", context={"command": value})
    return parts
