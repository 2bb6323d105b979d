from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from release_app.obs import close_log_stream, init_log_stream, sanitize, set_run_id, span


def test_sanitize_redacts_sensitive_keys_and_long_values() -> None:
    payload = {
        "token": "short",
        "sha256": "a" * 64,
        "detail": "auth ghp_abcdefghijklmnopqrstuvwxyz failed",
        "nested": [{"password": "hunter2"}],
    }
    cleaned = sanitize(payload)

    assert cleaned["token"] == "short"  # too short to look like a credential
    assert cleaned["sha256"] == "a" * 64
    assert "ghp_abcdefghijklmnopqrstuvwxyz" not in cleaned["detail"]
    assert cleaned["nested"][0]["password"] == "hunter2"


def test_span_reports_elapsed_time() -> None:
    events: list[dict[str, Any]] = []
    with span("Verify", events.append, attrs={"version": "1.3.0"}) as timing:
        pass

    assert [e["event"] for e in events] == ["span_start", "span_end"]
    assert events[0]["attrs"] == {"version": "1.3.0"}
    assert timing["ms"] == events[1]["ms"]


def test_log_stream_tags_run_id(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "run.jsonl"
    emit = init_log_stream(path)
    set_run_id("abc")
    try:
        emit({"event": "hello"})
    finally:
        set_run_id(None)
        close_log_stream(emit)

    line = json.loads(path.read_text(encoding="utf-8").strip())
    assert line["event"] == "hello"
    assert line["run_id"] == "abc"
    assert "timestamp" in line
