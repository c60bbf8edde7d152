from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

import main
from marketauth.core.targets import normalize_target
from marketauth.otp.store import SQLiteOTPStore
from marketauth.pipeline.audit import AuditEntry, SecurityAuditLog


@pytest.fixture
def cli_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setattr(main, "APP_ROOT", tmp_path)
    monkeypatch.setenv("STATE_SQLITE_PATH", "runtime/cli.db")
    monkeypatch.delenv("MONGODB_URI", raising=False)
    return tmp_path


def _run(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str], *args: str) -> dict:
    monkeypatch.setattr(sys, "argv", ["main.py", *args])
    main.main()
    out = capsys.readouterr().out
    return json.loads(out[out.index("{\n"):])


def test_migrate_reports_applied_sqlite_migrations(
    cli_root: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    summary = _run(monkeypatch, capsys, "migrate")

    assert "0001_otp_records.sql" in summary["sqlite"]
    assert summary["mongo"] == []


def test_otp_cleanup_and_stats(
    cli_root: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    store = SQLiteOTPStore(database_path=cli_root / "runtime" / "cli.db")
    store.issue(
        normalize_target(phone="+919876543210"),
        code_hash="h",
        instance_id="i1",
        now=1_000,
        ttl_seconds=600,
        max_attempts=5,
        cooldown_seconds=60,
    )
    store.close()

    stats = _run(monkeypatch, capsys, "otp-stats")
    cleanup = _run(monkeypatch, capsys, "otp-cleanup", "--grace-seconds", "0")

    assert stats["expired"] == 1
    assert cleanup == {"removed": 1}


def test_audit_export_filters_by_outcome(
    cli_root: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    audit_log = SecurityAuditLog(database_path=cli_root / "runtime" / "cli.db")
    audit_log.record(AuditEntry(action="read", resource_type="user", outcome="allowed"))
    audit_log.record(AuditEntry(action="update", resource_type="artisan", outcome="denied"))
    audit_log.close()

    summary = _run(monkeypatch, capsys, "audit-export", "--outcome", "denied")

    assert summary["total"] == 1
    assert summary["items"][0]["action"] == "update"
