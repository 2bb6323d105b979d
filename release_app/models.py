"""Data models shared by the release pipeline stages."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import total_ordering
from pathlib import PurePosixPath
from typing import Any

from .contracts import API_VERSION

_SEMVER_RE = re.compile(r"^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)$")


@total_ordering
@dataclass(frozen=True)
class SemVer:
    """Three-component release version."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> "SemVer":
        """Parse ``X.Y.Z`` (optionally ``vX.Y.Z``); raise ``ValueError`` otherwise."""

        match = _SEMVER_RE.match((value or "").strip())
        if not match:
            raise ValueError(f"Invalid version {value!r}; expected 'X.Y.Z'")
        return cls(int(match["major"]), int(match["minor"]), int(match["patch"]))

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self.as_tuple() < other.as_tuple()

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class VersionDecision:
    """Outcome of commit analysis for one pipeline run."""

    has_release: bool
    next_version: SemVer | None = None
    previous_version: SemVer | None = None
    notes: str = ""

    def __post_init__(self) -> None:
        if self.has_release and self.next_version is None:
            raise ValueError("A release decision requires next_version")

    @classmethod
    def no_release(cls) -> "VersionDecision":
        return cls(has_release=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_release": self.has_release,
            "next_version": str(self.next_version) if self.next_version else None,
            "previous_version": str(self.previous_version) if self.previous_version else None,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VersionDecision":
        next_version = data.get("next_version")
        previous_version = data.get("previous_version")
        return cls(
            has_release=bool(data.get("has_release")),
            next_version=SemVer.parse(next_version) if next_version else None,
            previous_version=SemVer.parse(previous_version) if previous_version else None,
            notes=data.get("notes", "") or "",
        )


@dataclass(frozen=True)
class ReleaseArtifact:
    """Version-bearing manifest content produced once per run.

    ``filename`` is the manifest's POSIX path relative to the checkout root
    (``Cargo.toml`` or ``crates/core/Cargo.toml``). Absolute paths and ``..``
    segments are rejected so materializing can never leave the checkout.
    """

    run_id: str
    version: SemVer
    filename: str
    content: bytes

    def __post_init__(self) -> None:
        path = PurePosixPath(self.filename)
        if (
            not self.filename
            or "\\" in self.filename
            or path.is_absolute()
            or ".." in path.parts
            or path.name in {"", "."}
        ):
            raise ValueError(f"Artifact path must be relative to the checkout: {self.filename!r}")

    @property
    def sha256(self) -> str:
        """Return the SHA-256 digest of the manifest bytes."""
        return hashlib.sha256(self.content).hexdigest()


class StageName(str, Enum):
    """Pipeline stages in execution order."""

    DRY_RUN = "DryRun"
    VERIFY = "Verify"
    PUBLISH_VCS = "PublishVCS"
    PUBLISH_REGISTRY = "PublishRegistry"


STAGE_ORDER: tuple[StageName, ...] = tuple(StageName)


class Outcome(str, Enum):
    PASSED = "Passed"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class RunState(str, Enum):
    """States of the release state machine."""

    INIT = "Init"
    NO_OP = "NoOp"
    ARTIFACT_BUILT = "ArtifactBuilt"
    VERIFYING = "Verifying"
    REJECTED = "Rejected"
    VERIFIED = "Verified"
    PUBLISHING_VCS = "PublishingVCS"
    FAILED = "Failed"
    PUBLISHED_VCS = "PublishedVCS"
    PUBLISHING_REGISTRY = "PublishingRegistry"
    PARTIAL_FAILURE = "PartialFailure"
    COMPLETE = "Complete"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {RunState.NO_OP, RunState.REJECTED, RunState.FAILED, RunState.PARTIAL_FAILURE, RunState.COMPLETE}
)


@dataclass(frozen=True)
class StageResult:
    """Reported outcome of a single stage.

    A timeout is recorded as ``Failed`` with ``timed_out`` set so it can be
    told apart from an ordinary failure while gating identically.
    """

    stage: StageName
    outcome: Outcome
    detail: str | None = None
    timed_out: bool = False
    elapsed_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "timed_out": self.timed_out,
            "elapsed_ms": self.elapsed_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageResult":
        return cls(
            stage=StageName(data["stage"]),
            outcome=Outcome(data["outcome"]),
            detail=data.get("detail"),
            timed_out=bool(data.get("timed_out", False)),
            elapsed_ms=int(data.get("elapsed_ms", 0) or 0),
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunRecord:
    """Mutable ledger of a single pipeline run."""

    run_id: str
    state: RunState = RunState.INIT
    decision: VersionDecision | None = None
    results: list[StageResult] = field(default_factory=list)
    artifact_sha256: str | None = None
    started_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def result_for(self, stage: StageName) -> StageResult | None:
        for result in self.results:
            if result.stage is stage:
                return result
        return None

    def record(self, result: StageResult) -> None:
        self.results.append(result)
        self.updated_at = _now_iso()

    def replace(self, result: StageResult) -> None:
        """Swap the recorded result of ``result.stage`` (registry resume only)."""
        self.results = [result if item.stage is result.stage else item for item in self.results]
        self.updated_at = _now_iso()

    @property
    def outcomes(self) -> list[Outcome]:
        return [result.outcome for result in self.results]

    @property
    def overall_outcome(self) -> Outcome:
        """Outcome of the last stage that was not skipped."""

        for result in reversed(self.results):
            if result.outcome is not Outcome.SKIPPED:
                return result.outcome
        return Outcome.SKIPPED

    def to_dict(self) -> dict[str, Any]:
        return {
            "api_version": API_VERSION,
            "run_id": self.run_id,
            "state": self.state.value,
            "terminal": self.state.is_terminal,
            "decision": self.decision.to_dict() if self.decision else None,
            "results": [result.to_dict() for result in self.results],
            "overall_outcome": self.overall_outcome.value,
            "artifact_sha256": self.artifact_sha256,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunRecord":
        decision = data.get("decision")
        return cls(
            run_id=data["run_id"],
            state=RunState(data.get("state", RunState.INIT.value)),
            decision=VersionDecision.from_dict(decision) if decision else None,
            results=[StageResult.from_dict(item) for item in data.get("results", [])],
            artifact_sha256=data.get("artifact_sha256"),
            started_at=data.get("started_at") or _now_iso(),
            updated_at=data.get("updated_at") or _now_iso(),
        )
