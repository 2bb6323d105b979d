"""Commit analysis: ask an external tool whether a release is warranted.

The pipeline never derives versions from commit messages itself. It consumes
a ``VersionDecision`` produced by a ``CommitAnalyzer`` implementation.
"""

from __future__ import annotations

import logging
import re
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence

from .exceptions import AnalyzerError
from .models import SemVer, VersionDecision

LOGGER = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
_NEXT_RE = re.compile(r"The next release version is (?P<version>v?\d+\.\d+\.\d+)")
_PREVIOUS_RE = re.compile(r"associated with version (?P<version>v?\d+\.\d+\.\d+)")
_NO_RELEASE_RE = re.compile(r"There are no relevant changes|no new version is released")
_NOTES_RE = re.compile(r"Release note for version (?P<version>v?\d+\.\d+\.\d+):\s*\n(?P<notes>.*)", re.DOTALL)


class CommitAnalyzer(ABC):
    """Decision oracle for whether and how to release."""

    @abstractmethod
    def analyze(self) -> VersionDecision:
        """Return the decision for the commits since the last release tag."""


class StaticAnalyzer(CommitAnalyzer):
    """Return a fixed decision (manual releases and tests)."""

    def __init__(self, decision: VersionDecision) -> None:
        self.decision = decision

    def analyze(self) -> VersionDecision:
        return self.decision


def parse_semantic_release_output(output: str) -> VersionDecision:
    """Extract a decision from ``semantic-release --dry-run`` output."""

    text = _ANSI_RE.sub("", output or "")
    next_match = _NEXT_RE.search(text)
    if next_match is None:
        if _NO_RELEASE_RE.search(text):
            return VersionDecision.no_release()
        raise AnalyzerError(
            "Could not find a release decision in semantic-release output",
            error_code="analyzer_unparseable",
        )

    previous_match = _PREVIOUS_RE.search(text)
    notes = ""
    notes_match = _NOTES_RE.search(text)
    if notes_match:
        notes = notes_match.group("notes").strip()

    return VersionDecision(
        has_release=True,
        next_version=SemVer.parse(next_match.group("version")),
        previous_version=SemVer.parse(previous_match.group("version")) if previous_match else None,
        notes=notes,
    )


class SemanticReleaseAnalyzer(CommitAnalyzer):
    """Run ``semantic-release`` in dry-run mode and parse its verdict."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        timeout: int = 300,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.command = list(command)
        self.timeout = timeout
        self.cwd = cwd
        self.env = dict(env) if env is not None else None

    def analyze(self) -> VersionDecision:
        LOGGER.info("Running commit analyzer: %s", " ".join(self.command))
        try:
            completed = subprocess.run(
                self.command,
                cwd=self.cwd,
                env=self.env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise AnalyzerError(
                "Commit analyzer timed out", exc, error_code="analyzer_timeout", context={"timeout": self.timeout}
            ) from exc
        except OSError as exc:
            raise AnalyzerError(
                "Commit analyzer could not be started", exc, error_code="analyzer_unavailable"
            ) from exc

        if completed.returncode != 0:
            raise AnalyzerError(
                "Commit analyzer exited with an error",
                error_code="analyzer_failed",
                context={"returncode": completed.returncode, "stderr": (completed.stderr or "")[-2000:]},
            )

        decision = parse_semantic_release_output(completed.stdout or "")
        if decision.has_release:
            LOGGER.info("Analyzer decided %s -> %s", decision.previous_version, decision.next_version)
        else:
            LOGGER.info("Analyzer found no releasable changes")
        return decision


__all__ = [
    "CommitAnalyzer",
    "StaticAnalyzer",
    "SemanticReleaseAnalyzer",
    "parse_semantic_release_output",
]
