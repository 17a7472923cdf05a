"""
CLI: roster-migration commands against an in-memory store.

Why:
    Operators drive migrations, restores and checks from the command line;
    exit codes and messages must say which phase failed.
"""
from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from backend.roster_migration.domain import EntityKind
from backend.roster_migration.ports import StoreError
from backend.roster_migration.repo_memory import InMemoryMigrationStore
from backend.tools import roster_migration as roster_cli


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    store = InMemoryMigrationStore()
    monkeypatch.setattr(roster_cli, "_build_store", lambda dsn: store)
    monkeypatch.setenv("MIGRATION_BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("MIGRATION_AUDIT_LOG", str(tmp_path / "logs" / "migration.log"))
    return store, tmp_path


def _write(tmp_path, doc, name="data.json"):
    path = tmp_path / name
    path.write_text(json.dumps(doc), encoding="utf-8")
    return str(path)


def _invoke(*args):
    return CliRunner().invoke(roster_cli.cli, list(args))


def test_migrate_success_prints_counts_and_writes_audit(cli_env, sample_doc):
    store, tmp_path = cli_env
    result = _invoke("migrate", "--dataset", _write(tmp_path, sample_doc))

    assert result.exit_code == 0, result.output
    assert "Migration finished successfully" in result.output
    assert "  students: 2" in result.output
    assert store.count(EntityKind.STUDENT) == 2
    audit_lines = (tmp_path / "logs" / "migration.log").read_text(encoding="utf-8").splitlines()
    assert json.loads(audit_lines[-1])["message"] == "migration summary"
    assert list((tmp_path / "backups").glob("backup-*.json"))


def test_migrate_validation_failure_exits_one(cli_env):
    store, tmp_path = cli_env
    doc = {"classes": [{"id": "c1", "name": "Math", "capacity": -1}]}
    result = _invoke("migrate", "--dataset", _write(tmp_path, doc))

    assert result.exit_code == 1
    assert "Migration failed [validation/none]" in result.output
    assert "class c1 [capacity]" in result.output
    assert store.commits == 0


def test_migrate_writes_report(cli_env, sample_doc):
    _, tmp_path = cli_env
    report = tmp_path / "out" / "result.json"
    result = _invoke("migrate", "--dataset", _write(tmp_path, sample_doc), "--report", str(report))
    assert result.exit_code == 0, result.output
    payload = json.loads(report.read_text(encoding="utf-8"))
    assert payload["success"] is True
    assert payload["phase"] == "committed"
    assert payload["counts"]["class_enrollments"] == 2


def test_dry_run_never_builds_a_store(tmp_path, monkeypatch, sample_doc):
    def _no_store(dsn):
        raise AssertionError("dry run must not open the store")

    monkeypatch.setattr(roster_cli, "_build_store", _no_store)
    ok = _invoke("migrate", "--dataset", _write(tmp_path, sample_doc), "--dry-run")
    assert ok.exit_code == 0, ok.output
    assert "Dry-run complete" in ok.output

    bad = _invoke("migrate", "--dataset", _write(tmp_path, {"students": [{"id": "s1"}]}, "bad.json"), "--dry-run")
    assert bad.exit_code == 1
    assert "1 validation error(s)" in bad.output


def test_migrate_rejects_non_object_dataset(cli_env):
    _, tmp_path = cli_env
    result = _invoke("migrate", "--dataset", _write(tmp_path, ["not", "an", "object"]))
    assert result.exit_code == 2
    assert "dataset must be a JSON object" in result.output


def test_missing_dsn_is_a_usage_error(tmp_path, sample_doc):
    result = _invoke("migrate", "--dataset", _write(tmp_path, sample_doc))
    assert result.exit_code == 2
    assert "No database configured" in result.output


def test_invalid_environment_is_a_usage_error(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///x.db")
    result = _invoke("backups")
    assert result.exit_code == 2
    assert "postgresql://" in result.output


def test_env_file_is_loaded(tmp_path, monkeypatch):
    # registered so monkeypatch restores the value load_dotenv overrides
    monkeypatch.setenv("MIGRATION_BACKUP_DIR", str(tmp_path / "unused"))
    backups = tmp_path / "elsewhere"
    env_file = tmp_path / ".env"
    env_file.write_text(f"MIGRATION_BACKUP_DIR={backups}\n", encoding="utf-8")
    backups.mkdir()
    (backups / "backup-2024-01-01T00-00-00-000000Z.json").write_text("{}", encoding="utf-8")

    result = _invoke("--env-file", str(env_file), "backups")
    assert result.exit_code == 0, result.output
    assert "2024-01-01T00-00-00-000000Z" in result.output


def test_backups_and_restore_roundtrip(cli_env, sample_doc):
    store, tmp_path = cli_env
    assert "No backups found." in _invoke("backups").output

    assert _invoke("migrate", "--dataset", _write(tmp_path, sample_doc)).exit_code == 0
    second = _invoke("migrate", "--dataset", _write(tmp_path, {"students": []}, "empty.json"))
    assert second.exit_code == 0, second.output
    assert store.count(EntityKind.STUDENT) == 0

    listing = _invoke("backups")
    ids = [line for line in listing.output.splitlines() if line]
    assert len(ids) == 2
    newest = ids[0]

    restored = _invoke("restore", newest)
    assert restored.exit_code == 0, restored.output
    assert f"Restored backup {newest}" in restored.output
    assert store.count(EntityKind.STUDENT) == 2


def test_restore_refuses_tampered_backup(cli_env, sample_doc):
    store, tmp_path = cli_env
    _invoke("migrate", "--dataset", _write(tmp_path, sample_doc))
    backup_id = _invoke("backups").output.splitlines()[0]
    path = tmp_path / "backups" / f"backup-{backup_id}.json"
    doc = json.loads(path.read_text(encoding="utf-8"))
    doc["checksum"] = "0" * 64
    path.write_text(json.dumps(doc), encoding="utf-8")
    before = store.counts()

    result = _invoke("restore", backup_id)
    assert result.exit_code == 1
    assert "Backup integrity check failed; store unchanged" in result.output
    assert store.counts() == before


def test_restore_unknown_backup(cli_env):
    result = _invoke("restore", "2020-01-01T00-00-00-000000Z")
    assert result.exit_code == 1
    assert "Restore failed" in result.output


def test_verify_reports_counts(cli_env, sample_doc):
    _, tmp_path = cli_env
    _invoke("migrate", "--dataset", _write(tmp_path, sample_doc))
    report = tmp_path / "verify.json"
    result = _invoke("verify", "--report", str(report))
    assert result.exit_code == 0, result.output
    assert "Integrity check passed." in result.output
    assert json.loads(report.read_text(encoding="utf-8"))["counts"]["users"] == 2


def test_verify_on_fresh_store(tmp_path, monkeypatch):
    monkeypatch.setattr(roster_cli, "_build_store", lambda dsn: InMemoryMigrationStore(initialized=False))
    monkeypatch.setenv("MIGRATION_AUDIT_LOG", "")
    result = _invoke("verify")
    assert result.exit_code == 0
    assert "no roster schema yet" in result.output


def test_verify_reports_store_errors_without_traceback(tmp_path, monkeypatch):
    class UnreachableStore(InMemoryMigrationStore):
        def read_all(self, kind):
            raise StoreError("server closed the connection unexpectedly")

    monkeypatch.setattr(roster_cli, "_build_store", lambda dsn: UnreachableStore())
    monkeypatch.setenv("MIGRATION_AUDIT_LOG", "")
    result = _invoke("verify")
    assert result.exit_code == 1
    assert "Verification failed: server closed the connection unexpectedly" in result.output
    assert not isinstance(result.exception, StoreError)


def test_init_schema(monkeypatch):
    store = InMemoryMigrationStore(initialized=False)
    monkeypatch.setattr(roster_cli, "_build_store", lambda dsn: store)
    result = _invoke("init-schema")
    assert result.exit_code == 0
    assert "Schema ready." in result.output
    assert store.is_initialized()


def test_self_test_command(tmp_path):
    report = tmp_path / "self-test.json"
    result = _invoke("self-test", "--report", str(report))
    assert result.exit_code == 0, result.output
    assert "[PASS] Apply failure rollback" in result.output
    assert "All self-test scenarios passed." in result.output
    assert json.loads(report.read_text(encoding="utf-8"))["passed"] is True


def test_self_test_ignores_invalid_environment(monkeypatch):
    monkeypatch.setenv("MIGRATION_SYSTEM_USER_EMAIL", "not-an-email")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///x.db")
    result = _invoke("self-test")
    assert result.exit_code == 0, result.output
    assert "All self-test scenarios passed." in result.output
    assert _invoke("backups").exit_code == 2
