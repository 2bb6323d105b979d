"""Run log plumbing for the release pipeline.

Every run writes one JSON object per line to its run log: state transitions,
stage results, stage timings and failure counters. The current run id lives in
a ``ContextVar`` and is stamped onto each event, and every payload is passed
through ``sanitize`` so registry and GitHub tokens never reach disk.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .exceptions import redact

LogEvent = Callable[[dict[str, Any]], None]

_RUN_ID: ContextVar[str | None] = ContextVar("run_id", default=None)

# Values under these keys are identifiers or digests, never secrets
_SAFE_KEYS = {"run_id", "sha256", "artifact_sha256", "url", "html_url", "path", "tag", "notes"}


def set_run_id(value: str | None) -> None:
    _RUN_ID.set(value)


def get_run_id() -> str | None:
    return _RUN_ID.get()


def _should_redact_key(key: str) -> bool:
    key_l = key.lower()
    if key_l in _SAFE_KEYS:
        return False
    return any(tok in key_l for tok in ("password", "secret", "token", "credential", "apikey", "api_key", "authorization"))


def sanitize(obj: Any) -> Any:
    """Return a copy of ``obj`` that is safe to write to the run log.

    Credential-like keys (``token``, ``authorization``...) have their values
    masked. Digests, run ids, URLs and release notes under the safe keys are
    kept verbatim. Any other string is scanned for token-shaped substrings.
    """

    if isinstance(obj, dict):
        result: dict[str, Any] = {}
        for k, v in obj.items():
            key = str(k)
            if _should_redact_key(key):
                result[k] = redact(v) if isinstance(v, str) else "<redacted>"
            elif key.lower() in _SAFE_KEYS:
                result[k] = v
            else:
                result[k] = sanitize(v)
        return result
    if isinstance(obj, (list, tuple)):
        return [sanitize(x) for x in obj]
    if isinstance(obj, str):
        return redact(obj)
    return obj


def init_log_stream(log_path: Path) -> LogEvent:
    """Open ``log_path`` for appending and return an event emitter.

    The emitter exposes ``close()``; callers close it once the run ends.
    """

    log_path.parent.mkdir(parents=True, exist_ok=True)
    handle = log_path.open("a", encoding="utf-8")

    def _emit(payload: dict[str, Any]) -> None:
        payload = sanitize(dict(payload))
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        run_id = get_run_id()
        if run_id is not None:
            payload.setdefault("run_id", run_id)
        handle.write(json.dumps(payload, ensure_ascii=False))
        handle.write("\n")
        handle.flush()

    def _close() -> None:
        handle.close()

    _emit.close = _close  # type: ignore[attr-defined]
    return _emit


def null_log_event(payload: dict[str, Any]) -> None:  # noqa: ARG001
    """Event sink used when no structured log is configured."""


def close_log_stream(log_event: LogEvent) -> None:
    closer = getattr(log_event, "close", None)
    if callable(closer):  # pragma: no branch - trivial guard
        closer()


@contextmanager
def span(
    name: str,
    log: LogEvent,
    *,
    attrs: Mapping[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """Time one pipeline stage and bracket it with span events.

    The yielded dict gets ``ms`` on exit; the orchestrator copies it into the
    stage's ``elapsed_ms``. The end event is logged even when the stage raises.

        with span("Verify", log_event, attrs={"version": "1.3.0"}) as timing:
            outcome = verifier(context)
    """

    start = time.monotonic()
    payload: dict[str, Any] = {"event": "span_start", "name": name}
    if attrs:
        payload["attrs"] = dict(attrs)
    log(payload)
    timing: dict[str, Any] = {"ms": 0}
    try:
        yield timing
    finally:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        timing["ms"] = elapsed_ms
        log({"event": "span_end", "name": name, "ms": elapsed_ms})


def metric(
    name: str,
    log: LogEvent,
    *,
    kind: str = "counter",
    value: int | float = 1,
    tags: Mapping[str, Any] | None = None,
) -> None:
    """Record a counter such as ``stage_failed`` in the run log."""

    payload: dict[str, Any] = {"event": "metric", "name": name, "kind": kind, "value": value}
    if tags:
        payload["tags"] = dict(tags)
    log(payload)
