"""Error taxonomy and utilities for the release pipeline."""

from __future__ import annotations

import logging
import re
import traceback
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any


class ScriptError(Exception):
    """Base error of the release pipeline.

    ``error_code`` is a short machine-readable tag (``duplicate``,
    ``gate_closed``, ``manifest_shape``...). When a stage raises, the tag
    becomes the ``detail`` of its failed ``StageResult``. ``context`` carries
    identifiers such as the run id or manifest path and is redacted before it
    is logged.
    """

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        *,
        error_code: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.original_error = original_error
        self.error_code = error_code
        self.timestamp = datetime.now(timezone.utc)
        self.context = dict(context or {})
        self.traceback = traceback.format_exc() if original_error else None
        super().__init__(self.get_error_message())

    def get_error_message(self) -> str:
        text = f"[{self.error_code}] {self.message}" if self.error_code else self.message
        if self.original_error is None:
            return text
        return f"{text} (caused by {type(self.original_error).__name__})"

    def to_dict(self) -> dict[str, Any]:
        """Log-safe view of the error."""

        return {
            "event": "error",
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "timestamp": self.timestamp.isoformat(),
            "message": redact(self.message),
            "context": {key: redact(str(value)) for key, value in self.context.items()},
        }

    def log_error(self, logger: logging.Logger) -> None:
        logger.error("%s", self.to_dict())
        if self.traceback:
            logger.debug("traceback=%s", self.traceback)


class ConfigError(ScriptError):
    """Configuration or environment error (e.g., missing tokens)."""


class ManifestShapeError(ScriptError):
    """The manifest does not contain exactly one canonical version line."""

    def __init__(self, message: str, *, matches: int, context: Mapping[str, Any] | None = None) -> None:
        self.matches = matches
        super().__init__(
            message,
            error_code="manifest_shape",
            context={"matches": matches, **dict(context or {})},
        )


class AnalyzerError(ScriptError):
    """The commit analyzer could not produce a version decision."""


class ArtifactError(ScriptError):
    """Release artifact missing, corrupted or conflicting for a run."""


class PipelineStateError(ScriptError):
    """An illegal state transition was requested."""


class GateClosedError(PipelineStateError):
    """A stage was requested whose predecessor has not passed, or which already ran."""


class PublishError(ScriptError):
    """Errors during publishing to an external target."""

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        *,
        target: str,
        error_code: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        self.target = target
        super().__init__(
            message,
            original_error,
            error_code=error_code or "publish_failed",
            context={"target": target, **dict(context or {})},
        )


def redact(text: str) -> str:
    """Redact potentially sensitive tokens from text.

    Long alphanumeric sequences that resemble API tokens are masked, keeping a
    short prefix and suffix so operators can still tell tokens apart. Version
    strings, tags and short identifiers are left untouched.
    """

    def _mask(match: re.Match[str]) -> str:
        token = match.group(0)
        return token[:4] + "…" + token[-2:]

    return re.sub(r"[A-Za-z0-9_\-]{20,}", _mask, text or "")
