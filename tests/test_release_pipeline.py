from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from release_app.analyzer import StaticAnalyzer
from release_app.artifacts import FileArtifactStore, MemoryArtifactStore
from release_app.exceptions import ArtifactError, ConfigError, GateClosedError, ManifestShapeError, PublishError
from release_app.manifest import read_version
from release_app.models import Outcome, ReleaseArtifact, RunState, SemVer, StageName, VersionDecision
from release_app.obs import init_log_stream
from release_app.pipeline import ReleasePipeline
from release_app.stages import CommandStage, StageOutcome

P, F, S = Outcome.PASSED, Outcome.FAILED, Outcome.SKIPPED


def test_no_release_reaches_noop_without_stage_calls(make_pipeline, stage, manifest_path: Path) -> None:
    verifier, vcs, registry = stage(), stage(), stage()
    before = manifest_path.read_bytes()
    store = MemoryArtifactStore()

    record = make_pipeline(VersionDecision.no_release(), verifier=verifier, vcs=vcs, registry=registry, store=store).run()

    assert record.state is RunState.NO_OP
    assert record.outcomes == [P, S, S, S]
    assert verifier.calls == [] and vcs.calls == [] and registry.calls == []
    assert manifest_path.read_bytes() == before
    with pytest.raises(ArtifactError):
        store.get(record.run_id)


def test_end_to_end_complete(make_pipeline, stage, release_decision, manifest_path: Path) -> None:
    verifier, vcs, registry = stage(), stage(), stage()

    record = make_pipeline(release_decision, verifier=verifier, vcs=vcs, registry=registry).run()

    assert record.state is RunState.COMPLETE
    assert record.outcomes == [P, P, P, P]
    assert record.overall_outcome is Outcome.PASSED
    assert read_version(manifest_path.read_text(encoding="utf-8")) == SemVer(1, 3, 0)

    # Every stage received the same artifact and decision
    artifacts = {call.artifact.sha256 for call in verifier.calls + vcs.calls + registry.calls}
    assert len(artifacts) == 1
    assert vcs.calls[0].decision.previous_version == SemVer(1, 2, 1)
    assert vcs.calls[0].decision.notes.startswith("### Features")
    assert b'version = "1.3.0"' in registry.calls[0].artifact.content


def test_verification_failure_rejects_and_skips_publish(
    make_pipeline, stage, release_decision, manifest_path: Path
) -> None:
    verifier = stage(StageOutcome.failed("exit code 101"))
    vcs, registry = stage(), stage()

    record = make_pipeline(release_decision, verifier=verifier, vcs=vcs, registry=registry).run()

    assert record.state is RunState.REJECTED
    assert record.outcomes == [P, F, S, S]
    assert record.overall_outcome is Outcome.FAILED
    assert vcs.calls == [] and registry.calls == []
    # The execution context still holds the rewritten manifest
    assert 'version = "1.3.0"' in manifest_path.read_text(encoding="utf-8")


def test_vcs_failure_never_reaches_registry(make_pipeline, stage, release_decision) -> None:
    registry = stage()
    vcs = stage(raises=PublishError("Release or tag already exists", target="vcs", error_code="duplicate"))

    record = make_pipeline(release_decision, vcs=vcs, registry=registry).run()

    assert record.state is RunState.FAILED
    assert record.outcomes == [P, P, F, S]
    assert record.result_for(StageName.PUBLISH_VCS).detail == "duplicate"
    assert registry.calls == []


def test_registry_failure_is_partial_failure(make_pipeline, stage, release_decision) -> None:
    registry = stage(StageOutcome.failed("exit code 1"))

    record = make_pipeline(release_decision, registry=registry).run()

    assert record.state is RunState.PARTIAL_FAILURE
    assert record.state is not RunState.FAILED
    assert record.outcomes == [P, P, P, F]


def test_timeout_is_a_distinct_failure(make_pipeline, stage, release_decision) -> None:
    verifier = stage(StageOutcome.failed("timeout after 5s", timed_out=True))

    record = make_pipeline(release_decision, verifier=verifier).run()

    verify = record.result_for(StageName.VERIFY)
    assert record.state is RunState.REJECTED
    assert verify.outcome is Outcome.FAILED
    assert verify.timed_out is True


def test_unexpected_stage_exception_fails_the_stage(make_pipeline, stage, release_decision) -> None:
    vcs = stage()
    verifier = stage(raises=RuntimeError("runner crashed"))

    record = make_pipeline(release_decision, verifier=verifier, vcs=vcs).run()

    assert record.state is RunState.REJECTED
    assert record.result_for(StageName.VERIFY).detail == "RuntimeError"
    assert vcs.calls == []


def test_manifest_shape_error_aborts_before_any_stage(make_pipeline, stage, release_decision, manifest_path: Path) -> None:
    manifest_path.write_text('[package]\nname = "gtdb"\n', encoding="utf-8")
    verifier = stage()
    store = MemoryArtifactStore()

    with pytest.raises(ManifestShapeError):
        make_pipeline(release_decision, verifier=verifier, store=store).run("abc123")

    assert verifier.calls == []
    with pytest.raises(ArtifactError):
        store.load_record("abc123")


def test_stage_at_a_time_across_contexts(tmp_path: Path, manifest_path: Path, release_decision, stage) -> None:
    store_dir = tmp_path / "store"
    verifier, vcs, registry = stage(), stage(), stage()

    def _context(**stages: object) -> ReleasePipeline:
        # A fresh pipeline object per stage mimics a separate CI job
        return ReleasePipeline(
            analyzer=StaticAnalyzer(release_decision),
            manifest_path=manifest_path,
            store=FileArtifactStore(store_dir),
            **stages,  # type: ignore[arg-type]
        )

    record = _context().run_stage("run1", StageName.DRY_RUN)
    assert record.state is RunState.ARTIFACT_BUILT

    # A later context with a stale checkout still sees the decided artifact
    manifest_path.write_text('[package]\nversion = "9.9.9"\n', encoding="utf-8")

    assert _context(verifier=verifier).run_stage("run1", StageName.VERIFY).state is RunState.VERIFIED
    assert verifier.calls[0].artifact.version == SemVer(1, 3, 0)
    assert _context(vcs_publisher=vcs).run_stage("run1", StageName.PUBLISH_VCS).state is RunState.PUBLISHED_VCS
    final = _context(registry_publisher=registry).run_stage("run1", StageName.PUBLISH_REGISTRY)

    assert final.state is RunState.COMPLETE
    assert final.outcomes == [P, P, P, P]
    persisted = json.loads((store_dir / "run1" / "run.json").read_text(encoding="utf-8"))
    assert persisted["state"] == "Complete"
    assert persisted["api_version"] == "v1"


def test_gates_reject_out_of_order_and_repeated_stages(
    tmp_path: Path, manifest_path: Path, release_decision, stage
) -> None:
    pipeline = ReleasePipeline(
        analyzer=StaticAnalyzer(release_decision),
        manifest_path=manifest_path,
        store=FileArtifactStore(tmp_path / "store"),
        verifier=stage(),
        vcs_publisher=stage(),
        registry_publisher=stage(),
    )
    pipeline.run_stage("run2", StageName.DRY_RUN)

    with pytest.raises(GateClosedError, match="gated"):
        pipeline.run_stage("run2", StageName.PUBLISH_VCS)

    pipeline.run_stage("run2", StageName.VERIFY)
    with pytest.raises(GateClosedError, match="already recorded"):
        pipeline.run_stage("run2", StageName.VERIFY)
    with pytest.raises(GateClosedError):
        pipeline.run_stage("run2", StageName.DRY_RUN)


def test_resume_reruns_only_registry(make_pipeline, stage, release_decision) -> None:
    store = MemoryArtifactStore()
    vcs = stage()
    failing = stage(StageOutcome.failed("exit code 1"))
    record = make_pipeline(release_decision, vcs=vcs, registry=failing, store=store).run("run3")
    assert record.state is RunState.PARTIAL_FAILURE

    registry = stage()
    resumed = make_pipeline(release_decision, vcs=vcs, registry=registry, store=store).resume("run3")

    assert resumed.state is RunState.COMPLETE
    assert resumed.outcomes == [P, P, P, P]
    assert len(vcs.calls) == 1
    assert len(registry.calls) == 1


def test_resume_requires_partial_failure(make_pipeline, stage, release_decision) -> None:
    store = MemoryArtifactStore()
    make_pipeline(release_decision, verifier=stage(StageOutcome.failed()), store=store).run("run4")

    with pytest.raises(GateClosedError):
        make_pipeline(release_decision, store=store).resume("run4")


def test_structured_log_records_each_stage(make_pipeline, stage, release_decision, tmp_path: Path) -> None:
    log_path = tmp_path / "release.jsonl"
    log_event = init_log_stream(log_path)
    try:
        make_pipeline(release_decision, verifier=stage(StageOutcome.failed("boom")), log_event=log_event).run("run5")
    finally:
        log_event.close()  # type: ignore[attr-defined]

    events = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines() if line]
    results = [e for e in events if e.get("event") == "stage_result"]
    assert [e["outcome"] for e in results] == ["Passed", "Failed", "Skipped", "Skipped"]
    complete = [e for e in events if e.get("event") == "pipeline_complete"]
    assert complete and complete[-1]["state"] == "Rejected"
    assert all(e.get("run_id") == "run5" for e in events)


def test_nested_manifest_is_materialized_at_its_own_path(tmp_path: Path, release_decision, stage) -> None:
    root_manifest = tmp_path / "Cargo.toml"
    root_manifest.write_text('[workspace]\nmembers = ["crates/core"]\n', encoding="utf-8")
    crate_manifest = tmp_path / "crates" / "core" / "Cargo.toml"
    crate_manifest.parent.mkdir(parents=True)
    stale = '[package]\nname = "core"\nversion = "1.2.1"\n'
    crate_manifest.write_text(stale, encoding="utf-8")
    store_dir = tmp_path / "store"

    def _context(**stages: object) -> ReleasePipeline:
        return ReleasePipeline(
            analyzer=StaticAnalyzer(release_decision),
            manifest_path=crate_manifest,
            store=FileArtifactStore(store_dir),
            workdir=tmp_path,
            **stages,  # type: ignore[arg-type]
        )

    _context().run_stage("ws1", StageName.DRY_RUN)
    assert FileArtifactStore(store_dir).get("ws1").filename == "crates/core/Cargo.toml"

    # The verify job starts from a fresh checkout
    crate_manifest.write_text(stale, encoding="utf-8")
    verifier = CommandStage("verify", [sys.executable, "-c", "pass"], workdir=tmp_path, timeout=30)
    record = _context(verifier=verifier).run_stage("ws1", StageName.VERIFY)

    assert record.state is RunState.VERIFIED
    assert root_manifest.read_text(encoding="utf-8").startswith("[workspace]")
    assert 'version = "1.3.0"' in crate_manifest.read_text(encoding="utf-8")


def test_manifest_outside_workdir_is_rejected(tmp_path: Path, manifest_path: Path, release_decision) -> None:
    before = manifest_path.read_bytes()
    pipeline = ReleasePipeline(
        analyzer=StaticAnalyzer(release_decision),
        manifest_path=manifest_path,
        store=MemoryArtifactStore(),
        workdir=tmp_path / "elsewhere",
    )

    with pytest.raises(ConfigError):
        pipeline.run("r0")
    assert manifest_path.read_bytes() == before


def test_prerelease_manifest_value_is_replaced(make_pipeline, stage, release_decision, manifest_path: Path) -> None:
    manifest_path.write_text('[package]\nname = "gtdb"\nversion = "1.3.0-dev"\n', encoding="utf-8")

    record = make_pipeline(release_decision).run("r1")

    assert record.state is RunState.COMPLETE
    assert manifest_path.read_text(encoding="utf-8") == '[package]\nname = "gtdb"\nversion = "1.3.0"\n'


def test_conflicting_artifact_leaves_manifest_untouched(
    make_pipeline, release_decision, manifest_path: Path
) -> None:
    before = manifest_path.read_bytes()
    store = MemoryArtifactStore()
    store.put(ReleaseArtifact("r2", SemVer(9, 0, 0), "Cargo.toml", b'version = "9.0.0"\n'))

    with pytest.raises(ArtifactError) as exc:
        make_pipeline(release_decision, store=store).run("r2")

    assert exc.value.error_code == "artifact_conflict"
    assert manifest_path.read_bytes() == before
