"""Black-box verification and publish steps driven by the orchestrator."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .models import ReleaseArtifact, VersionDecision

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageContext:
    """Everything a stage may consume: the decided version and its artifact."""

    run_id: str
    decision: VersionDecision
    artifact: ReleaseArtifact


@dataclass(frozen=True)
class StageOutcome:
    """Pass/fail signal returned by a stage."""

    passed: bool
    detail: str | None = None
    timed_out: bool = False

    @classmethod
    def ok(cls, detail: str | None = None) -> "StageOutcome":
        return cls(passed=True, detail=detail)

    @classmethod
    def failed(cls, detail: str | None = None, *, timed_out: bool = False) -> "StageOutcome":
        return cls(passed=False, detail=detail, timed_out=timed_out)


Stage = Callable[[StageContext], StageOutcome]


def materialize_artifact(artifact: ReleaseArtifact, workdir: Path) -> Path:
    """Write the artifact's manifest at its relative path under ``workdir``."""

    target = Path(workdir).joinpath(*PurePosixPath(artifact.filename).parts)
    target.parent.mkdir(parents=True, exist_ok=True)
    if not target.exists() or target.read_bytes() != artifact.content:
        target.write_bytes(artifact.content)
    return target


class CommandStage:
    """Run an external command against the checked-out artifact tree.

    Used for the test suite (``cargo test``) and the registry upload
    (``cargo publish``). Exit code zero passes; anything else, including a
    timeout, fails.
    """

    def __init__(
        self,
        name: str,
        command: Sequence[str],
        *,
        workdir: Path = Path("."),
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.name = name
        self.command = list(command)
        self.workdir = Path(workdir)
        self.timeout = timeout
        self.env = dict(env or {})

    def __call__(self, context: StageContext) -> StageOutcome:
        manifest_path = materialize_artifact(context.artifact, self.workdir)
        LOGGER.info(
            "[%s] running %s with %s at version %s",
            self.name,
            " ".join(self.command),
            manifest_path.name,
            context.artifact.version,
        )
        env = {**os.environ, **self.env, "RELEASE_VERSION": str(context.artifact.version)}
        try:
            completed = subprocess.run(
                self.command,
                cwd=self.workdir,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            LOGGER.error("[%s] timed out after %ss", self.name, self.timeout)
            return StageOutcome.failed(f"timeout after {self.timeout}s", timed_out=True)
        except OSError as exc:
            LOGGER.error("[%s] could not start %s: %s", self.name, self.command[0], exc)
            return StageOutcome.failed(f"could not start: {exc.__class__.__name__}")

        if completed.stdout:
            LOGGER.debug("[%s] stdout:\n%s", self.name, completed.stdout[-4000:])
        if completed.returncode != 0:
            if completed.stderr:
                LOGGER.error("[%s] stderr:\n%s", self.name, completed.stderr[-4000:])
            return StageOutcome.failed(f"exit code {completed.returncode}")
        return StageOutcome.ok("exit code 0")


__all__ = ["Stage", "StageContext", "StageOutcome", "CommandStage", "materialize_artifact"]
