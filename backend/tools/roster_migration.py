"""Command line entry point for roster data migrations.

Why:
    Operators load the legacy classroom mock data into the relational store
    once, and need the recovery tools around that step (list and restore
    backups, verify the persisted state) without writing any code.

Commands:
    migrate     Validate, back up, apply and verify one dataset file.
    restore     Restore a named backup after verifying its checksum.
    backups     List backup ids, newest first.
    verify      Count rows and re-check references of the persisted state.
    init-schema Create the roster tables (idempotent).
    self-test   Run the built-in scenarios against an in-memory store.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import click

from backend.roster_migration.audit import AuditLogger, JsonlAuditSink
from backend.roster_migration.backup import BackupManager, list_backup_ids
from backend.roster_migration.backup_storage import FileBackupStorage
from backend.roster_migration.config import MigrationConfig, load_migration_config
from backend.roster_migration.domain import Dataset
from backend.roster_migration.executor import MigrationExecutor
from backend.roster_migration.ports import (
    BackupIntegrityError,
    MigrationError,
    MigrationInProgressError,
)
from backend.roster_migration.repo_db import PostgresMigrationStore
from backend.roster_migration.selftest import run_self_test
from backend.roster_migration.validation import validate_dataset

logger = logging.getLogger("classboard.migration.cli")

# commands that never read the environment configuration
_CONFIG_FREE_COMMANDS = frozenset({"self-test"})


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _build_store(dsn: Optional[str]):
    """Create the destination store; tests monkeypatch this factory."""
    if not dsn:
        raise click.UsageError("No database configured; set ROSTER_MIGRATION_DSN or SERVICE_ROLE_DSN.")
    return PostgresMigrationStore(dsn)


def _build_executor(config: MigrationConfig) -> MigrationExecutor:
    store = _build_store(config.dsn)
    sink = JsonlAuditSink(config.audit_log_path) if config.audit_log_path else None
    return MigrationExecutor(
        store,
        BackupManager(store, FileBackupStorage(config.backup_dir)),
        audit=AuditLogger(sink),
        system_user=config.system_user(),
    )


def _load_dataset(path: str) -> Dataset:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            document = json.load(fh)
    except (OSError, ValueError) as exc:
        raise click.BadParameter(f"cannot read dataset: {exc}", param_hint="--dataset") from exc
    if not isinstance(document, dict):
        raise click.BadParameter("dataset must be a JSON object", param_hint="--dataset")
    try:
        return Dataset.from_dict(document)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--dataset") from exc


def _write_report(path: Optional[str], payload: Dict[str, Any]) -> None:
    if not path:
        return
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    click.echo(f"Report written to {target}")


def _echo_errors(errors) -> None:
    for error in errors:
        where = f"{error.entity} {error.entity_id}".strip()
        click.echo(f"  - {where} [{error.field}]: {error.message}", err=True)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--env-file",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
    help="Load environment variables from this .env file first.",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, env_file: Optional[str], verbose: bool) -> None:
    """Migrate roster data into the relational store with backup and recovery."""
    configure_logging(verbose)
    if env_file:
        from dotenv import load_dotenv

        load_dotenv(env_file, override=True)
    if ctx.invoked_subcommand in _CONFIG_FREE_COMMANDS:
        return
    try:
        ctx.obj = load_migration_config()
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc


@cli.command()
@click.option("--dataset", "dataset_path", required=True, type=click.Path(exists=True, dir_okay=False),
              help="JSON document with the roster collections.")
@click.option("--dry-run", is_flag=True, default=False, help="Validate only; do not touch the store.")
@click.option("--report", "report_path", required=False, type=click.Path(dir_okay=False),
              help="Write the result as JSON to this path.")
@click.pass_obj
def migrate(config: MigrationConfig, dataset_path: str, dry_run: bool, report_path: Optional[str]) -> None:
    """Validate, back up, apply and verify one dataset.

    Behaviour:
        - Dry runs only validate; no connection to the store is opened.
        - Exit code 0 on success, 1 on any failure. The message names the
          failed phase and the recovery action that was taken.
    """
    dataset = _load_dataset(dataset_path)
    counts = ", ".join(f"{k}={v}" for k, v in dataset.counts().items() if v)
    click.echo(f"Loaded dataset: {counts or 'empty'}")

    if dry_run:
        errors = validate_dataset(dataset, system_user_id=config.system_user_id)
        _write_report(report_path, {"dry_run": True, "valid": not errors, "errors": [e.to_dict() for e in errors]})
        if errors:
            click.echo(f"Dry-run: {len(errors)} validation error(s)", err=True)
            _echo_errors(errors)
            raise SystemExit(1)
        click.echo("Dry-run complete; dataset is valid. No writes were made.")
        return

    executor = _build_executor(config)
    try:
        result = executor.migrate_all_data(dataset)
    except MigrationInProgressError as exc:
        click.echo(f"Migration refused: {exc}", err=True)
        raise SystemExit(1)
    _write_report(report_path, result.to_dict())
    if result.backup_id:
        click.echo(f"Backup: {result.backup_id}")
    if not result.success:
        click.echo(f"Migration failed [{result.phase.value}/{result.recovery.value}]: {result.message}", err=True)
        _echo_errors(result.errors)
        raise SystemExit(1)
    for name, count in result.counts.items():
        click.echo(f"  {name}: {count}")
    click.echo(f"Migration finished successfully in {result.duration_seconds:.2f}s.")


@cli.command()
@click.argument("backup_id")
@click.pass_obj
def restore(config: MigrationConfig, backup_id: str) -> None:
    """Restore BACKUP_ID after verifying its checksum."""
    executor = _build_executor(config)
    try:
        counts = executor.rollback(backup_id)
    except BackupIntegrityError as exc:
        click.echo(f"Backup integrity check failed; store unchanged: {exc}", err=True)
        raise SystemExit(1)
    except MigrationError as exc:
        click.echo(f"Restore failed: {exc}", err=True)
        raise SystemExit(1)
    total = sum(counts.values())
    click.echo(f"Restored backup {backup_id} ({total} rows).")


@cli.command("backups")
@click.pass_obj
def list_backups(config: MigrationConfig) -> None:
    """List backup ids, newest first."""
    ids = list_backup_ids(FileBackupStorage(config.backup_dir))
    if not ids:
        click.echo("No backups found.")
        return
    for backup_id in ids:
        click.echo(backup_id)


@cli.command()
@click.option("--report", "report_path", required=False, type=click.Path(dir_okay=False))
@click.pass_obj
def verify(config: MigrationConfig, report_path: Optional[str]) -> None:
    """Count persisted rows and check their references."""
    try:
        report = _build_executor(config).validate_migration()
    except MigrationError as exc:
        click.echo(f"Verification failed: {exc}", err=True)
        raise SystemExit(1)
    _write_report(report_path, report.to_dict())
    if not report.initialized:
        click.echo("Store has no roster schema yet.")
    for name, count in report.counts.items():
        click.echo(f"  {name}: {count}")
    if not report.ok:
        click.echo(f"Integrity check failed: {len(report.errors)} problem(s)", err=True)
        _echo_errors(report.errors)
        raise SystemExit(1)
    click.echo("Integrity check passed.")


@cli.command("init-schema")
@click.pass_obj
def init_schema(config: MigrationConfig) -> None:
    """Create the roster tables if they do not exist."""
    store = _build_store(config.dsn)
    try:
        store.ensure_schema()
    except MigrationError as exc:
        click.echo(f"Schema setup failed: {exc}", err=True)
        raise SystemExit(1)
    click.echo("Schema ready.")


@cli.command("self-test")
@click.option("--report", "report_path", required=False, type=click.Path(dir_okay=False))
def self_test(report_path: Optional[str]) -> None:
    """Run the built-in migration scenarios against an in-memory store."""
    report = run_self_test()
    for case in report.cases:
        mark = "PASS" if case.passed else "FAIL"
        click.echo(f"[{mark}] {case.test}: {case.detail}")
    _write_report(report_path, report.to_dict())
    if not report.passed:
        raise SystemExit(1)
    click.echo("All self-test scenarios passed.")


if __name__ == "__main__":  # pragma: no cover
    cli()
