"""Publish the source-control release (tag + release notes) to GitHub."""

from __future__ import annotations

import logging
from typing import Any

import requests
import tenacity

from .config import VcsConfig
from .exceptions import PublishError
from .stages import StageContext, StageOutcome

LOGGER = logging.getLogger(__name__)

TARGET = "vcs"


class RateLimitedError(PublishError):
    """GitHub answered 429; the request may be retried after a pause."""


class GitHubReleasePublisher:
    """Create a tagged GitHub release for the decided version.

    HTTP 429 responses are retried a bounded number of times. Every other
    non-2xx response raises ``PublishError`` so the orchestrator can mark the
    stage as failed; a 422 means the tag or release already exists.
    """

    def __init__(
        self,
        config: VcsConfig,
        *,
        session: requests.Session | None = None,
        target_commitish: str | None = None,
        wait: Any = None,
    ) -> None:
        self.config = config
        self.token = config.require_token()
        self.session = session or requests.Session()
        self.target_commitish = target_commitish
        self._retrying = tenacity.Retrying(
            wait=wait if wait is not None else tenacity.wait_exponential(multiplier=1, min=5, max=60),
            stop=tenacity.stop_after_attempt(max(1, config.retry_attempts)),
            retry=tenacity.retry_if_exception_type(RateLimitedError),
            reraise=True,
        )

    @property
    def releases_url(self) -> str:
        return f"{self.config.api_url.rstrip('/')}/repos/{self.config.repo}/releases"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def build_payload(self, context: StageContext) -> dict[str, Any]:
        decision = context.decision
        tag = f"{self.config.tag_prefix}{decision.next_version}"
        payload: dict[str, Any] = {
            "tag_name": tag,
            "name": tag,
            "body": decision.notes or f"Release {decision.next_version}",
            "draft": False,
            "prerelease": False,
        }
        if self.target_commitish:
            payload["target_commitish"] = self.target_commitish
        return payload

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.session.post(
                self.releases_url, json=payload, headers=self._headers(), timeout=self.config.timeout
            )
        except requests.RequestException as exc:
            raise PublishError("GitHub API request failed", exc, target=TARGET, error_code="vcs_unreachable") from exc

        if response.status_code == 429:
            LOGGER.info("429 received from GitHub; backing off before retry")
            raise RateLimitedError("GitHub rate limit exceeded", target=TARGET, error_code="vcs_rate_limited")
        if response.status_code == 422:
            raise PublishError(
                "Release or tag already exists",
                target=TARGET,
                error_code="duplicate",
                context={"tag": payload["tag_name"]},
            )
        if response.status_code in (401, 403):
            raise PublishError("GitHub rejected the token", target=TARGET, error_code="vcs_unauthorized")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise PublishError(
                "GitHub API returned an error",
                exc,
                target=TARGET,
                error_code="vcs_http_error",
                context={"status": response.status_code},
            ) from exc
        # The release exists once GitHub answered 2xx, whatever the body looks like
        try:
            body = response.json()
        except ValueError:
            LOGGER.warning("GitHub returned %s with a non-JSON body", response.status_code)
            return {}
        return body if isinstance(body, dict) else {}

    def __call__(self, context: StageContext) -> StageOutcome:
        payload = self.build_payload(context)
        LOGGER.info("Creating GitHub release %s on %s", payload["tag_name"], self.config.repo)
        release = self._retrying(self._post, payload)
        url = release.get("html_url") or payload["tag_name"]
        LOGGER.info("GitHub release created: %s", url)
        return StageOutcome.ok(url)


__all__ = ["GitHubReleasePublisher", "RateLimitedError"]
