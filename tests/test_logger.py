"""Tests for the JSON log format."""

from __future__ import annotations

import io
import json
import uuid

from fitguard.logger import StructuredLogger
from fitguard.utils import REDACTED


def make_logger(config, stream: io.StringIO) -> StructuredLogger:
    return StructuredLogger(
        name=f"fitguard.tests.{uuid.uuid4().hex}", stream=stream, log_file="", config=config,
    )


def test_event_is_promoted_and_secrets_redacted(config) -> None:
    stream = io.StringIO()
    make_logger(config, stream).warning(
        "Login failed for %s.", "bob@x.com",
        extra={"event": "LOGIN_FAILED", "reason": "invalid_password", "session_token": "abc"},
    )

    entry = json.loads(stream.getvalue())
    assert entry["level"] == "WARNING"
    assert entry["event"] == "LOGIN_FAILED"
    assert entry["message"] == "Login failed for bob@x.com."
    assert entry["extra"] == {"reason": "invalid_password", "session_token": REDACTED}
    assert "abc" not in stream.getvalue()


def test_plain_message_has_no_extra(config) -> None:
    stream = io.StringIO()
    make_logger(config, stream).info("Schema up to date.")

    entry = json.loads(stream.getvalue())
    assert "event" not in entry
    assert "extra" not in entry
    assert entry["timestamp"].endswith("+00:00")


def test_unwritable_log_file_falls_back_to_console(config, tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    stream = io.StringIO()
    log = StructuredLogger(
        name=f"fitguard.tests.{uuid.uuid4().hex}",
        stream=stream,
        log_file=str(blocker / "app.log"),
        config=config,
    )
    log.info("still here")

    events = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert events[0]["event"] == "LOG_FILE_UNAVAILABLE"
    assert events[-1]["message"] == "still here"
