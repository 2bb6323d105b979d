from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from release_app.analyzer import StaticAnalyzer
from release_app.artifacts import MemoryArtifactStore
from release_app.models import SemVer, VersionDecision
from release_app.pipeline import ReleasePipeline
from release_app.stages import StageContext, StageOutcome

MANIFEST = """[package]
name = "gtdb"
version = "1.2.1"
edition = "2021"

[dependencies]
serde = { version = "1.0", features = ["derive"] }
"""


class RecordingStage:
    """Stage double that records every call and returns a fixed outcome."""

    def __init__(self, outcome: StageOutcome | None = None, *, raises: Exception | None = None) -> None:
        self.outcome = outcome or StageOutcome.ok()
        self.raises = raises
        self.calls: list[StageContext] = []

    def __call__(self, context: StageContext) -> StageOutcome:
        self.calls.append(context)
        if self.raises is not None:
            raise self.raises
        return self.outcome


@pytest.fixture()
def manifest_text() -> str:
    return MANIFEST


@pytest.fixture()
def manifest_path(tmp_path: Path) -> Path:
    path = tmp_path / "Cargo.toml"
    path.write_text(MANIFEST, encoding="utf-8")
    return path


@pytest.fixture()
def release_decision() -> VersionDecision:
    return VersionDecision(
        has_release=True,
        next_version=SemVer(1, 3, 0),
        previous_version=SemVer(1, 2, 1),
        notes="### Features\n\n* add RED dictionary",
    )


@pytest.fixture()
def make_pipeline(manifest_path: Path) -> Callable[..., ReleasePipeline]:
    def _factory(
        decision: VersionDecision,
        *,
        verifier: RecordingStage | None = None,
        vcs: RecordingStage | None = None,
        registry: RecordingStage | None = None,
        store: MemoryArtifactStore | None = None,
        log_event: Callable[[dict[str, object]], None] | None = None,
    ) -> ReleasePipeline:
        return ReleasePipeline(
            analyzer=StaticAnalyzer(decision),
            manifest_path=manifest_path,
            store=store or MemoryArtifactStore(),
            verifier=verifier if verifier is not None else RecordingStage(),
            vcs_publisher=vcs if vcs is not None else RecordingStage(),
            registry_publisher=registry if registry is not None else RecordingStage(),
            log_event=log_event,
        )

    return _factory


@pytest.fixture()
def stage() -> type[RecordingStage]:
    return RecordingStage
