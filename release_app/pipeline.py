"""Orchestration of the release state machine.

Init -> (analyze) -> NoOp | ArtifactBuilt -> Verifying -> Rejected | Verified
-> PublishingVCS -> Failed | PublishedVCS -> PublishingRegistry
-> PartialFailure | Complete

Every stage runs at most once per run and a failure short-circuits all later
stages. Side effects of earlier stages are never rolled back; the terminal
state says where a follow-up run has to pick up.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from .analyzer import CommitAnalyzer
from .artifacts import ArtifactStore
from .contracts import API_VERSION
from .exceptions import ArtifactError, ConfigError, GateClosedError, PipelineStateError, ScriptError
from .manifest import read_version_text, write_version
from .models import (
    STAGE_ORDER,
    Outcome,
    ReleaseArtifact,
    RunRecord,
    RunState,
    SemVer,
    StageName,
    StageResult,
)
from .obs import LogEvent, metric, null_log_event, set_run_id, span
from .stages import Stage, StageContext, StageOutcome

LOGGER = logging.getLogger(__name__)

TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.INIT: frozenset({RunState.NO_OP, RunState.ARTIFACT_BUILT}),
    RunState.ARTIFACT_BUILT: frozenset({RunState.VERIFYING}),
    RunState.VERIFYING: frozenset({RunState.VERIFIED, RunState.REJECTED}),
    RunState.VERIFIED: frozenset({RunState.PUBLISHING_VCS}),
    RunState.PUBLISHING_VCS: frozenset({RunState.PUBLISHED_VCS, RunState.FAILED}),
    RunState.PUBLISHED_VCS: frozenset({RunState.PUBLISHING_REGISTRY}),
    RunState.PUBLISHING_REGISTRY: frozenset({RunState.COMPLETE, RunState.PARTIAL_FAILURE}),
    # Registry-only resume, entered explicitly through ReleasePipeline.resume
    RunState.PARTIAL_FAILURE: frozenset({RunState.PUBLISHING_REGISTRY}),
}


@dataclass(frozen=True)
class StagePlan:
    """Gate and transitions of one post-analysis stage."""

    stage: StageName
    ready: RunState
    running: RunState
    on_pass: RunState
    on_fail: RunState


STAGE_PLANS: dict[StageName, StagePlan] = {
    StageName.VERIFY: StagePlan(
        StageName.VERIFY, RunState.ARTIFACT_BUILT, RunState.VERIFYING, RunState.VERIFIED, RunState.REJECTED
    ),
    StageName.PUBLISH_VCS: StagePlan(
        StageName.PUBLISH_VCS, RunState.VERIFIED, RunState.PUBLISHING_VCS, RunState.PUBLISHED_VCS, RunState.FAILED
    ),
    StageName.PUBLISH_REGISTRY: StagePlan(
        StageName.PUBLISH_REGISTRY,
        RunState.PUBLISHED_VCS,
        RunState.PUBLISHING_REGISTRY,
        RunState.COMPLETE,
        RunState.PARTIAL_FAILURE,
    ),
}


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def write_summary(path: Path, record: RunRecord) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(record.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")


class ReleasePipeline:
    """Drive a release run through its gated stages."""

    def __init__(
        self,
        *,
        analyzer: CommitAnalyzer,
        manifest_path: Path,
        store: ArtifactStore,
        verifier: Stage | None = None,
        vcs_publisher: Stage | None = None,
        registry_publisher: Stage | None = None,
        log_event: LogEvent | None = None,
        workdir: Path | None = None,
    ) -> None:
        self.analyzer = analyzer
        self.manifest_path = Path(manifest_path)
        self.workdir = Path(workdir) if workdir is not None else self.manifest_path.parent
        self.store = store
        self.stages: dict[StageName, Stage | None] = {
            StageName.VERIFY: verifier,
            StageName.PUBLISH_VCS: vcs_publisher,
            StageName.PUBLISH_REGISTRY: registry_publisher,
        }
        self.log_event = log_event or null_log_event

    # -- state bookkeeping -------------------------------------------------

    def _transition(self, record: RunRecord, target: RunState) -> None:
        allowed = TRANSITIONS.get(record.state, frozenset())
        if target not in allowed:
            raise PipelineStateError(
                f"Illegal transition {record.state.value} -> {target.value}",
                error_code="illegal_transition",
                context={"run_id": record.run_id},
            )
        self.log_event({"event": "state_transition", "from": record.state.value, "to": target.value})
        LOGGER.debug("Run %s: %s -> %s", record.run_id, record.state.value, target.value)
        record.state = target

    def _record(self, record: RunRecord, result: StageResult) -> None:
        record.record(result)
        self.log_event({"event": "stage_result", **result.to_dict()})

    def _skip_after(self, record: RunRecord, stage: StageName) -> None:
        for later in STAGE_ORDER[STAGE_ORDER.index(stage) + 1 :]:
            if record.result_for(later) is None:
                self._record(record, StageResult(later, Outcome.SKIPPED, detail=f"gated by {stage.value}"))

    def _save(self, record: RunRecord) -> None:
        self.store.save_record(record)

    # -- stages ------------------------------------------------------------

    def prepare(self, run_id: str | None = None) -> RunRecord:
        """Run the dry-run stage: analyze, write the manifest, store the artifact."""

        run_id = run_id or new_run_id()
        try:
            self.store.load_record(run_id)
        except ArtifactError:
            pass
        else:
            raise GateClosedError(
                "Dry run already recorded for this run", error_code="stage_already_ran", context={"run_id": run_id}
            )

        set_run_id(run_id)
        record = RunRecord(run_id=run_id)
        with span(StageName.DRY_RUN.value, self.log_event) as timing:
            decision = self.analyzer.analyze()
            record.decision = decision
            if not decision.has_release:
                LOGGER.info("No release needed; nothing to do")
            else:
                artifact = self._build_artifact(run_id, decision.next_version)
                record.artifact_sha256 = artifact.sha256

        detail = str(decision.next_version) if decision.has_release else "no release"
        self._record(record, StageResult(StageName.DRY_RUN, Outcome.PASSED, detail, elapsed_ms=timing["ms"]))
        if decision.has_release:
            self._transition(record, RunState.ARTIFACT_BUILT)
        else:
            self._transition(record, RunState.NO_OP)
            self._skip_after(record, StageName.DRY_RUN)
        self._save(record)
        return record

    def _manifest_relpath(self) -> str:
        try:
            relative = self.manifest_path.resolve().relative_to(self.workdir.resolve())
        except ValueError:
            raise ConfigError(
                "Manifest must live inside the working directory",
                context={"path": str(self.manifest_path), "workdir": str(self.workdir)},
            ) from None
        return relative.as_posix()

    def _build_artifact(self, run_id: str, version: SemVer) -> ReleaseArtifact:
        if not self.manifest_path.is_file():
            raise ConfigError("Manifest file not found", context={"path": str(self.manifest_path)})
        # newline="" keeps the manifest bytes identical outside the version value
        with self.manifest_path.open("r", encoding="utf-8", newline="") as handle:
            original = handle.read()
        current = read_version_text(original)
        updated = write_version(original, version)
        artifact = ReleaseArtifact(
            run_id=run_id,
            version=version,
            filename=self._manifest_relpath(),
            content=updated.encode("utf-8"),
        )
        # Stored before the checkout is touched: a rejected put leaves the manifest as it was
        self.store.put(artifact)
        LOGGER.info("Manifest %s: %s -> %s", artifact.filename, current, version)
        with self.manifest_path.open("w", encoding="utf-8", newline="") as handle:
            handle.write(updated)
        self.log_event(
            {
                "event": "artifact_built",
                "version": str(version),
                "previous_manifest_version": str(current),
                "sha256": artifact.sha256,
            }
        )
        return artifact

    def _load_artifact(self, record: RunRecord) -> ReleaseArtifact:
        artifact = self.store.get(record.run_id)
        if record.artifact_sha256 and artifact.sha256 != record.artifact_sha256:
            raise ArtifactError(
                "Stored artifact differs from the one recorded at dry run",
                error_code="artifact_mismatch",
                context={"run_id": record.run_id},
            )
        return artifact

    def _invoke(self, stage: StageName, runner: Stage, context: StageContext) -> StageOutcome:
        try:
            return runner(context)
        except ScriptError as exc:
            exc.log_error(LOGGER)
            return StageOutcome.failed(exc.error_code or exc.__class__.__name__)
        except Exception as exc:  # stage boundary: unexpected errors fail the stage
            LOGGER.exception("Stage %s raised unexpectedly", stage.value)
            return StageOutcome.failed(exc.__class__.__name__)

    def _execute(self, record: RunRecord, plan: StagePlan, artifact: ReleaseArtifact) -> StageResult:
        runner = self.stages[plan.stage]
        if runner is None:
            raise ConfigError(f"No runner configured for stage {plan.stage.value}")
        if record.decision is None:
            raise PipelineStateError("Run has no version decision", error_code="missing_decision")

        self._transition(record, plan.running)
        context = StageContext(run_id=record.run_id, decision=record.decision, artifact=artifact)
        with span(plan.stage.value, self.log_event, attrs={"version": str(artifact.version)}) as timing:
            outcome = self._invoke(plan.stage, runner, context)

        result = StageResult(
            stage=plan.stage,
            outcome=Outcome.PASSED if outcome.passed else Outcome.FAILED,
            detail=outcome.detail,
            timed_out=outcome.timed_out,
            elapsed_ms=timing["ms"],
        )
        if record.result_for(plan.stage) is None:
            self._record(record, result)
        else:
            record.replace(result)
            self.log_event({"event": "stage_result", **result.to_dict()})

        if outcome.passed:
            self._transition(record, plan.on_pass)
        else:
            LOGGER.error("Stage %s failed: %s", plan.stage.value, outcome.detail)
            metric("stage_failed", self.log_event, tags={"stage": plan.stage.value, "timed_out": outcome.timed_out})
            self._transition(record, plan.on_fail)
            self._skip_after(record, plan.stage)
        self._save(record)
        return result

    # -- entry points ------------------------------------------------------

    def run(self, run_id: str | None = None) -> RunRecord:
        """Execute every stage in order within this process."""

        run_id = run_id or new_run_id()
        set_run_id(run_id)
        self.log_event({"event": "pipeline_start", "manifest": str(self.manifest_path), "api_version": API_VERSION})
        try:
            record = self.prepare(run_id)
            if record.state is RunState.ARTIFACT_BUILT:
                artifact = self._load_artifact(record)
                for stage in (StageName.VERIFY, StageName.PUBLISH_VCS, StageName.PUBLISH_REGISTRY):
                    self._execute(record, STAGE_PLANS[stage], artifact)
                    if record.state.is_terminal:
                        break
            self._complete(record)
            return record
        finally:
            set_run_id(None)

    def run_stage(self, run_id: str, stage: StageName) -> RunRecord:
        """Execute a single stage of a run whose record lives in the store."""

        set_run_id(run_id)
        try:
            if stage is StageName.DRY_RUN:
                record = self.prepare(run_id)
                if record.state.is_terminal:
                    self._complete(record)
                return record

            record = self.store.load_record(run_id)
            plan = STAGE_PLANS[stage]
            previous = record.result_for(stage)
            if previous is not None and previous.outcome is not Outcome.SKIPPED:
                raise GateClosedError(
                    f"Stage {stage.value} already recorded for this run",
                    error_code="stage_already_ran",
                    context={"run_id": run_id, "state": record.state.value},
                )
            if record.state is not plan.ready:
                raise GateClosedError(
                    f"Stage {stage.value} is gated: run is in state {record.state.value}",
                    error_code="gate_closed",
                    context={"run_id": run_id, "required": plan.ready.value},
                )
            self._execute(record, plan, self._load_artifact(record))
            if record.state.is_terminal:
                self._complete(record)
            return record
        finally:
            set_run_id(None)

    def resume(self, run_id: str) -> RunRecord:
        """Re-run only the registry publish of a run that ended in PartialFailure.

        The source-control release already exists and is not touched again.
        """

        set_run_id(run_id)
        try:
            record = self.store.load_record(run_id)
            if record.state is not RunState.PARTIAL_FAILURE:
                raise GateClosedError(
                    f"Only PartialFailure runs can be resumed (state is {record.state.value})",
                    error_code="not_resumable",
                    context={"run_id": run_id},
                )
            self.log_event({"event": "registry_resume"})
            self._execute(record, STAGE_PLANS[StageName.PUBLISH_REGISTRY], self._load_artifact(record))
            self._complete(record)
            return record
        finally:
            set_run_id(None)

    def _complete(self, record: RunRecord) -> None:
        self.log_event(
            {
                "event": "pipeline_complete",
                "state": record.state.value,
                "outcomes": [outcome.value for outcome in record.outcomes],
                "overall_outcome": record.overall_outcome.value,
            }
        )
        LOGGER.info("Run %s finished in state %s", record.run_id, record.state.value)


__all__ = ["ReleasePipeline", "STAGE_PLANS", "TRANSITIONS", "StagePlan", "new_run_id", "write_summary"]
