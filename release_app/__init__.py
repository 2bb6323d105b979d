"""Gated release automation: analyze, write version, verify, publish."""

__version__ = "1.0.0"

from .analyzer import CommitAnalyzer, SemanticReleaseAnalyzer, StaticAnalyzer
from .artifacts import FileArtifactStore, MemoryArtifactStore
from .exceptions import ManifestShapeError, PublishError, ScriptError
from .manifest import read_version, write_version
from .models import Outcome, RunState, SemVer, StageName, VersionDecision
from .pipeline import ReleasePipeline

__all__ = [
    "CommitAnalyzer",
    "SemanticReleaseAnalyzer",
    "StaticAnalyzer",
    "FileArtifactStore",
    "MemoryArtifactStore",
    "ManifestShapeError",
    "PublishError",
    "ScriptError",
    "read_version",
    "write_version",
    "Outcome",
    "RunState",
    "SemVer",
    "StageName",
    "VersionDecision",
    "ReleasePipeline",
]
