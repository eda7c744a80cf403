"""Tests for the maintenance command line."""

from __future__ import annotations

import json

import pytest

import main as cli
from fitguard.database import DatabaseManager
from fitguard.models.enums import AuditEventType
from fitguard.services.audit_log import AuditLog
from fitguard.services.rate_limiter import RateLimiter
from tests.conftest import build_config


@pytest.fixture
def cli_config(tmp_path, monkeypatch):
    config = build_config(
        DATABASE_PATH=str(tmp_path / "cli.db"),
        TOKEN_STORE_SALT_PATH=str(tmp_path / "salt"),
    )
    monkeypatch.setattr(cli, "get_config", lambda: config)
    assert cli.main(["init"]) == 0
    return config


def json_lines(out: str, key: str) -> list[dict]:
    """JSON objects printed by a command, skipping interleaved log lines."""
    objects = []
    for line in out.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        payload = json.loads(line)
        if key in payload:
            objects.append(payload)
    return objects


def open_db(config, logger) -> DatabaseManager:
    return DatabaseManager(sqlite_path=config.DATABASE_PATH, logger=logger)


def test_init_is_repeatable(cli_config, capsys) -> None:
    assert cli.main(["init"]) == 0
    assert "up to date" in capsys.readouterr().out


def test_unlock_clears_lockout(cli_config, logger) -> None:
    db = open_db(cli_config, logger)
    try:
        limiter = RateLimiter(db, logger, cli_config)
        for _ in range(5):
            limiter.record_failure("bob@x.com")
        assert limiter.check("bob@x.com").locked
    finally:
        db.close()

    assert cli.main(["unlock", "  Bob@X.com "]) == 0

    db = open_db(cli_config, logger)
    try:
        assert RateLimiter(db, logger, cli_config).get_state("bob@x.com") is None
    finally:
        db.close()


def test_audit_prints_json_lines(cli_config, logger, capsys) -> None:
    db = open_db(cli_config, logger)
    try:
        log = AuditLog(db, logger, cli_config)
        log.log(AuditEventType.LOGIN_FAILED, "bob@x.com", False)
        log.log(AuditEventType.LOGOUT, "user-1", True)
    finally:
        db.close()
    capsys.readouterr()

    assert cli.main(["audit", "--subject", "BOB@x.com", "--failures-only", "--days", "1"]) == 0
    [event] = json_lines(capsys.readouterr().out, "event_type")
    assert event["event_type"] == "login_failed"
    assert event["subject"] == "bob@x.com"


def test_verify_audit_exit_codes(cli_config, logger, capsys) -> None:
    db = open_db(cli_config, logger)
    try:
        AuditLog(db, logger, cli_config).log(AuditEventType.LOGOUT, "user-1", True)
    finally:
        db.close()
    capsys.readouterr()

    assert cli.main(["verify-audit"]) == 0
    [report] = json_lines(capsys.readouterr().out, "tampered_ids")
    assert report["ok"] is True

    db = open_db(cli_config, logger)
    try:
        with db.write_lock:
            db.sqlite.execute("UPDATE security_audit SET subject = 'someone-else'")
            db.sqlite.commit()
    finally:
        db.close()

    assert cli.main(["verify-audit"]) == 2


def test_sweep_reports_counts(cli_config, capsys) -> None:
    capsys.readouterr()
    assert cli.main(["sweep"]) == 0
    out = capsys.readouterr().out
    assert "Removed 0 expired audit event(s)." in out
    assert "Removed 0 stale rate-limit entries." in out


def test_days_must_be_positive(cli_config) -> None:
    with pytest.raises(SystemExit):
        cli.main(["audit", "--days", "0"])
