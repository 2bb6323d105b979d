"""Keyed storage for the per-run release artifact and run record.

Stages may execute in separate, stateless contexts. They never recompute the
version: they fetch the artifact written by the dry-run stage of the same run.
A run owns exactly one artifact; storing different bytes under an existing run
id is an error, storing the same bytes again is a no-op.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .exceptions import ArtifactError
from .models import ReleaseArtifact, RunRecord, SemVer

LOGGER = logging.getLogger(__name__)


class ArtifactStore(ABC):
    """Map ``run_id`` to the run's artifact and its record."""

    @abstractmethod
    def _read_artifact(self, run_id: str) -> ReleaseArtifact | None: ...

    @abstractmethod
    def _write_artifact(self, artifact: ReleaseArtifact) -> None: ...

    @abstractmethod
    def save_record(self, record: RunRecord) -> None: ...

    @abstractmethod
    def load_record(self, run_id: str) -> RunRecord: ...

    def put(self, artifact: ReleaseArtifact) -> ReleaseArtifact:
        existing = self._read_artifact(artifact.run_id)
        if existing is not None:
            if existing.sha256 != artifact.sha256 or existing.version != artifact.version:
                raise ArtifactError(
                    "A different artifact is already stored for this run",
                    error_code="artifact_conflict",
                    context={"run_id": artifact.run_id, "stored": existing.sha256, "new": artifact.sha256},
                )
            return existing
        self._write_artifact(artifact)
        LOGGER.info("Stored artifact for run %s (%s, %s)", artifact.run_id, artifact.version, artifact.sha256[:12])
        return artifact

    def get(self, run_id: str) -> ReleaseArtifact:
        artifact = self._read_artifact(run_id)
        if artifact is None:
            raise ArtifactError(
                "No artifact stored for run", error_code="artifact_missing", context={"run_id": run_id}
            )
        return artifact


class MemoryArtifactStore(ArtifactStore):
    """In-process store for single-context runs and tests."""

    def __init__(self) -> None:
        self._artifacts: dict[str, ReleaseArtifact] = {}
        self._records: dict[str, dict[str, Any]] = {}

    def _read_artifact(self, run_id: str) -> ReleaseArtifact | None:
        return self._artifacts.get(run_id)

    def _write_artifact(self, artifact: ReleaseArtifact) -> None:
        self._artifacts[artifact.run_id] = artifact

    def save_record(self, record: RunRecord) -> None:
        self._records[record.run_id] = record.to_dict()

    def load_record(self, run_id: str) -> RunRecord:
        try:
            return RunRecord.from_dict(self._records[run_id])
        except KeyError:
            raise ArtifactError(
                "No run record stored", error_code="record_missing", context={"run_id": run_id}
            ) from None


class FileArtifactStore(ArtifactStore):
    """Directory-backed store: ``<root>/<run_id>/{artifact.bin,artifact.json,run.json}``.

    The root can be uploaded and downloaded between CI jobs as a whole.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _run_dir(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or "\\" in run_id or run_id in {".", ".."}:
            raise ArtifactError("Invalid run id", error_code="invalid_run_id", context={"run_id": run_id})
        return self.root / run_id

    def _read_artifact(self, run_id: str) -> ReleaseArtifact | None:
        run_dir = self._run_dir(run_id)
        meta_path = run_dir / "artifact.json"
        blob_path = run_dir / "artifact.bin"
        if not meta_path.exists() or not blob_path.exists():
            return None
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        try:
            artifact = ReleaseArtifact(
                run_id=run_id,
                version=SemVer.parse(meta["version"]),
                filename=meta["filename"],
                content=blob_path.read_bytes(),
            )
        except (KeyError, ValueError) as exc:
            raise ArtifactError(
                "Stored artifact metadata is invalid", exc, error_code="artifact_corrupt", context={"run_id": run_id}
            ) from exc
        if artifact.sha256 != meta.get("sha256"):
            raise ArtifactError(
                "Stored artifact does not match its recorded digest",
                error_code="artifact_corrupt",
                context={"run_id": run_id, "expected": meta.get("sha256"), "actual": artifact.sha256},
            )
        return artifact

    def _write_artifact(self, artifact: ReleaseArtifact) -> None:
        run_dir = self._run_dir(artifact.run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        (run_dir / "artifact.bin").write_bytes(artifact.content)
        meta = {
            "run_id": artifact.run_id,
            "version": str(artifact.version),
            "filename": artifact.filename,
            "sha256": artifact.sha256,
        }
        # Metadata last: a missing artifact.json means the write never finished
        (run_dir / "artifact.json").write_text(json.dumps(meta, indent=2), encoding="utf-8")

    def save_record(self, record: RunRecord) -> None:
        run_dir = self._run_dir(record.run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        path = run_dir / "run.json"
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)

    def load_record(self, run_id: str) -> RunRecord:
        path = self._run_dir(run_id) / "run.json"
        if not path.exists():
            raise ArtifactError("No run record stored", error_code="record_missing", context={"run_id": run_id})
        return RunRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def prune(self, retention_days: int, *, now: float | None = None) -> list[str]:
        """Delete run directories older than ``retention_days``; return removed run ids."""

        if not self.root.exists():
            return []
        cutoff = (now if now is not None else time.time()) - retention_days * 86400
        removed: list[str] = []
        for run_dir in sorted(self.root.iterdir()):
            if not run_dir.is_dir():
                continue
            if run_dir.stat().st_mtime < cutoff:
                shutil.rmtree(run_dir)
                removed.append(run_dir.name)
        if removed:
            LOGGER.info("Pruned %d expired run(s) from %s", len(removed), self.root)
        return removed


__all__ = ["ArtifactStore", "MemoryArtifactStore", "FileArtifactStore"]
