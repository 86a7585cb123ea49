# src/imigrate/cli.py
"""imigrate Command Line Interface.

Entry point for the imigrate CLI tool.

Passwords are never read from the settings file. Each command that talks
to iMIS takes them, in order, from an unlocked keyring
(IMIGRATE_MASTER_PASSWORD), from IMIGRATE_PASSWORD_<ENV_ID>, or from an
interactive prompt.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import typer
from pydantic import ValidationError

from imigrate import __version__
from imigrate.contracts import (
    Environment,
    ImigrateError,
    JobStatus,
    JobWithCounts,
    RowStatus,
    ValidationFailedError,
)
from imigrate.core.config import ImigrateSettings, load_job_spec, load_settings
from imigrate.core.security import CredentialVault, PasswordKeyring
from imigrate.core.store import MigrationDB, Persistence
from imigrate.engine.orchestrator import MigrationOrchestrator
from imigrate.engine.pool import EnvironmentLimits
from imigrate.engine.supervisor import JobSupervisor
from imigrate.imis import ImisClient

__all__ = ["app"]

DEFAULT_SETTINGS_FILE = Path("settings.yaml")
MASTER_PASSWORD_ENV = "IMIGRATE_MASTER_PASSWORD"

app = typer.Typer(
    name="imigrate",
    help="imigrate: Move records between iMIS environments.",
    no_args_is_help=True,
)
jobs_app = typer.Typer(help="Migration job commands.", no_args_is_help=True)
env_app = typer.Typer(help="Environment commands.", no_args_is_help=True)
keyring_app = typer.Typer(help="Stored password commands.", no_args_is_help=True)
app.add_typer(jobs_app, name="jobs")
app.add_typer(env_app, name="env")
app.add_typer(keyring_app, name="keyring")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"imigrate version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@dataclass
class _CliState:
    settings_path: Path | None
    verbose: bool
    json_logs: bool


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file (default: ./settings.yaml if present).",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """imigrate: Move records between iMIS environments."""
    from imigrate.core.logging import configure_logging

    # Provisional until the settings file has been read
    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )

    if settings is None and DEFAULT_SETTINGS_FILE.exists():
        settings = DEFAULT_SETTINGS_FILE
    ctx.obj = _CliState(settings_path=settings, verbose=verbose, json_logs=json_logs)


# =============================================================================
# Runtime wiring
# =============================================================================


@dataclass
class _Runtime:
    settings: ImigrateSettings
    persistence: Persistence
    vault: CredentialVault
    keyring: PasswordKeyring
    client: ImisClient
    orchestrator: MigrationOrchestrator


def _load_settings_or_exit(state: _CliState) -> ImigrateSettings:
    try:
        return load_settings(state.settings_path)
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {state.settings_path}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


@contextmanager
def _runtime(ctx: typer.Context) -> Iterator[_Runtime]:
    """Wire store, vault, client and orchestrator from settings; close them after."""
    from imigrate.core.logging import configure_logging

    state: _CliState = ctx.obj
    settings = _load_settings_or_exit(state)
    configure_logging(
        json_output=state.json_logs or settings.logging.json_output,
        level="DEBUG" if state.verbose else settings.logging.level,
    )

    db = MigrationDB.from_url(settings.database.url)
    persistence = Persistence(db)
    for environment in settings.imis.environments:
        persistence.upsert_environment(environment.to_environment())

    vault = CredentialVault()
    keyring = PasswordKeyring(vault, persistence)
    client = ImisClient.from_settings(vault, settings.imis)
    orchestrator = MigrationOrchestrator(
        persistence,
        vault,
        client,
        supervisor=JobSupervisor(max_workers=settings.runner.max_concurrent_jobs),
        limits=EnvironmentLimits(),
        page_size=settings.extraction.page_size,
    )
    try:
        yield _Runtime(settings, persistence, vault, keyring, client, orchestrator)
    finally:
        orchestrator.shutdown(wait=True)
        client.close()
        db.close()


@contextmanager
def _errors_to_exit() -> Iterator[None]:
    """Report domain errors on stderr and exit non-zero."""
    try:
        yield
    except ValidationFailedError as e:
        typer.echo("Pre-flight check failed:", err=True)
        for problem in e.problems:
            typer.echo(f"  - {problem}", err=True)
        raise typer.Exit(1) from None
    except ImigrateError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _password_env_var(environment_id: str) -> str:
    return "IMIGRATE_PASSWORD_" + re.sub(r"[^A-Z0-9]", "_", environment_id.upper())


def _unlock_keyring(runtime: _Runtime) -> None:
    master_password = os.environ.get(MASTER_PASSWORD_ENV)
    if master_password and runtime.keyring.is_enabled and not runtime.keyring.is_unlocked:
        runtime.keyring.unlock(master_password)


def _ensure_passwords(runtime: _Runtime, *environments: Environment) -> None:
    """Make every environment's password resident, prompting if needed."""
    _unlock_keyring(runtime)
    for environment in environments:
        if runtime.vault.has_password(environment.id):
            continue
        password = os.environ.get(_password_env_var(environment.id))
        if not password:
            password = typer.prompt(f"Password for {environment.username}@{environment.name}", hide_input=True)
        runtime.keyring.set_password(environment.id, password)


def _job_payload(entry: JobWithCounts) -> dict[str, Any]:
    job = entry.job
    return {
        "id": job.id,
        "name": job.name,
        "status": job.status.value,
        "mode": job.mode.value,
        "source": job.source_name,
        "destination": job.dest_entity_type,
        "total_rows": job.total_rows,
        "processed": entry.counts.processed,
        "successful": entry.counts.successful,
        "failed": entry.counts.failed,
        "failed_offsets": job.failed_offsets,
        "identity_field_names": job.identity_field_names,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "error_message": job.error_message,
    }


def _echo_job(entry: JobWithCounts) -> None:
    job = entry.job
    counts = entry.counts
    total = job.total_rows if job.total_rows is not None else "?"
    typer.echo(f"{job.id}  {job.name}")
    typer.echo(f"  Status:   {job.status.value}")
    typer.echo(f"  Source:   {job.mode.value} {job.source_name}")
    typer.echo(f"  Target:   {job.dest_entity_type}")
    typer.echo(f"  Progress: {counts.processed}/{total} ({counts.successful} ok, {counts.failed} failed)")
    if job.failed_offsets:
        typer.echo(f"  Failed pages at offsets: {', '.join(str(o) for o in job.failed_offsets)}")
    if job.error_message:
        typer.echo(f"  Error:    {job.error_message}")


# =============================================================================
# Jobs
# =============================================================================


@jobs_app.command("create")
def jobs_create(
    ctx: typer.Context,
    spec: Path = typer.Argument(..., help="Job specification YAML file."),
) -> None:
    """Create a queued job from a YAML job specification."""
    try:
        job_spec = load_job_spec(spec)
    except FileNotFoundError:
        typer.echo(f"Error: Job spec not found: {spec}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Job spec errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None

    with _runtime(ctx) as runtime, _errors_to_exit():
        job_id = runtime.orchestrator.create_job(job_spec)
    typer.echo(job_id)


@jobs_app.command("run")
def jobs_run(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
    poll_seconds: float = typer.Option(2.0, "--poll", help="Seconds between progress updates."),
) -> None:
    """Run a queued or failed job and wait for it to finish.

    Ctrl-C requests cancellation; rows already dispatched still complete.
    """
    with _runtime(ctx) as runtime, _errors_to_exit():
        job = runtime.persistence.get_job(job_id)
        _ensure_passwords(
            runtime,
            runtime.persistence.get_environment_by_id(job.source_environment_id),
            runtime.persistence.get_environment_by_id(job.dest_environment_id),
        )
        runtime.orchestrator.run_job(job_id)
        typer.echo(f"Job {job_id} started")
        try:
            while runtime.orchestrator.is_running(job_id):
                job = runtime.orchestrator.wait(job_id, timeout=poll_seconds)
                if job.status == JobStatus.CANCELLED:
                    # Cancelled from another process
                    runtime.orchestrator.cancel_job(job_id)
                elif job.status == JobStatus.RUNNING:
                    counts = runtime.persistence.get_job_counts(job_id)
                    typer.echo(f"  {counts.processed}/{job.total_rows or '?'} rows ({counts.failed} failed)")
        except KeyboardInterrupt:
            typer.echo("Cancelling...", err=True)
            runtime.orchestrator.cancel_job(job_id)
            runtime.orchestrator.wait(job_id)

        entry = runtime.orchestrator.get_job_with_counts(job_id)
        _echo_job(entry)
    if entry.job.status not in (JobStatus.COMPLETED, JobStatus.CANCELLED):
        raise typer.Exit(1)


@jobs_app.command("status")
def jobs_status(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
    output_format: Literal["console", "json"] = typer.Option("console", "--format", "-f"),
) -> None:
    """Show a job's status and row counts."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        entry = runtime.orchestrator.get_job_with_counts(job_id)
    if output_format == "json":
        typer.echo(json.dumps(_job_payload(entry)))
    else:
        _echo_job(entry)


@jobs_app.command("list")
def jobs_list(
    ctx: typer.Context,
    output_format: Literal["console", "json"] = typer.Option("console", "--format", "-f"),
) -> None:
    """List jobs, newest first."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        entries = runtime.orchestrator.list_jobs()
    if output_format == "json":
        typer.echo(json.dumps([_job_payload(entry) for entry in entries]))
        return
    if not entries:
        typer.echo("No jobs.")
    for entry in entries:
        typer.echo(f"{entry.job.id}  {entry.job.status.value:10} {entry.counts.processed:>7} rows  {entry.job.name}")


@jobs_app.command("rows")
def jobs_rows(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
    status: RowStatus | None = typer.Option(None, "--status", help="Only rows with this status."),
) -> None:
    """List a job's rows with their latest attempt."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        page = runtime.orchestrator.get_job_rows(job_id, status)
    for summary in page.rows:
        row = summary.row
        identity = ",".join(row.identity_elements or []) or "-"
        line = f"{row.id}  #{row.row_index:<6} {row.status.value:8} attempts={summary.attempt_count} identity={identity}"
        if row.status == RowStatus.FAILED and summary.latest_error:
            line += f"  error={summary.latest_error}"
        typer.echo(line)
    typer.echo(f"{page.total} row(s)")


@jobs_app.command("attempts")
def jobs_attempts(
    ctx: typer.Context,
    row_id: str = typer.Argument(...),
) -> None:
    """Show every insertion attempt of a row, oldest first."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        attempts = runtime.orchestrator.get_row_attempts(row_id)
    for attempt in attempts:
        outcome = "ok" if attempt.success else f"failed: {attempt.error_message}"
        typer.echo(f"{attempt.sequence:>3}  {attempt.created_at.isoformat()}  {attempt.reason.value:12} {outcome}")


@jobs_app.command("retry")
def jobs_retry(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
) -> None:
    """Retry every failed row of a job from its stored payload."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        job = runtime.persistence.get_job(job_id)
        _ensure_passwords(
            runtime,
            runtime.persistence.get_environment_by_id(job.source_environment_id),
            runtime.persistence.get_environment_by_id(job.dest_environment_id),
        )
        summary = runtime.orchestrator.retry_failed_rows(job_id)
    typer.echo(f"Retried {summary.retried}: {summary.succeeded} succeeded, {summary.failed} failed")


@jobs_app.command("retry-row")
def jobs_retry_row(
    ctx: typer.Context,
    row_id: str = typer.Argument(...),
) -> None:
    """Retry one failed row."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        row = runtime.persistence.get_row(row_id)
        job = runtime.persistence.get_job(row.job_id)
        _ensure_passwords(
            runtime,
            runtime.persistence.get_environment_by_id(job.source_environment_id),
            runtime.persistence.get_environment_by_id(job.dest_environment_id),
        )
        result = runtime.orchestrator.retry_single_row(row_id)
    if result.success:
        typer.echo(f"Row {row_id} inserted: {','.join(result.row.row.identity_elements or [])}")
    else:
        typer.echo(f"Row {row_id} failed again: {result.row.latest_error}", err=True)
        raise typer.Exit(1)


@jobs_app.command("cancel")
def jobs_cancel(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
) -> None:
    """Cancel a queued or running job."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        runtime.orchestrator.cancel_job(job_id)
        status = runtime.persistence.get_job(job_id).status
    typer.echo(f"Job {job_id}: {status.value}")


@jobs_app.command("delete")
def jobs_delete(
    ctx: typer.Context,
    job_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation."),
) -> None:
    """Delete a job with all its rows and attempts."""
    if not yes:
        typer.confirm(f"Delete job {job_id} and all of its rows?", abort=True)
    with _runtime(ctx) as runtime, _errors_to_exit():
        runtime.orchestrator.delete_job(job_id)
    typer.echo(f"Deleted {job_id}")


# =============================================================================
# Environments
# =============================================================================


@env_app.command("list")
def env_list(ctx: typer.Context) -> None:
    """List configured environments."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        environments = runtime.persistence.list_environments()
    for environment in environments:
        typer.echo(f"{environment.id:16} {environment.api_version.value}  {environment.base_url}  ({environment.username})")


@env_app.command("check")
def env_check(
    ctx: typer.Context,
    environment_id: str = typer.Argument(...),
) -> None:
    """Authenticate against an environment and make one read request."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        environment = runtime.persistence.get_environment_by_id(environment_id)
        _ensure_passwords(runtime, environment)
        runtime.client.check_connection(environment)
    typer.echo(f"{environment.name}: OK")


@env_app.command("sources")
def env_sources(
    ctx: typer.Context,
    environment_id: str = typer.Argument(...),
) -> None:
    """List business objects available as data sources."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        environment = runtime.persistence.get_environment_by_id(environment_id)
        _ensure_passwords(runtime, environment)
        sources = runtime.client.list_data_sources(environment)
    for source in sources:
        typer.echo(f"{source.entity_type:32} {source.description or ''}".rstrip())


# =============================================================================
# Keyring
# =============================================================================


def _master_password(prompt: str, *, confirm: bool = False) -> str:
    value = os.environ.get(MASTER_PASSWORD_ENV)
    if value:
        return value
    password: str = typer.prompt(prompt, hide_input=True, confirmation_prompt=confirm)
    return password


@keyring_app.command("enable")
def keyring_enable(ctx: typer.Context) -> None:
    """Store environment passwords encrypted under a master password."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        runtime.keyring.enable(_master_password("New master password", confirm=True))
    typer.echo("Password storage enabled")


@keyring_app.command("store")
def keyring_store(
    ctx: typer.Context,
    environment_id: str = typer.Argument(...),
) -> None:
    """Store (or replace) one environment's password."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        environment = runtime.persistence.get_environment_by_id(environment_id)
        runtime.keyring.unlock(_master_password("Master password"))
        password = typer.prompt(f"Password for {environment.username}@{environment.name}", hide_input=True)
        runtime.keyring.set_password(environment.id, password)
    typer.echo(f"Stored password for {environment_id}")


@keyring_app.command("change")
def keyring_change(ctx: typer.Context) -> None:
    """Re-encrypt stored passwords under a new master password."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        current = _master_password("Current master password")
        new = typer.prompt("New master password", hide_input=True, confirmation_prompt=True)
        runtime.keyring.change(current, new)
    typer.echo("Master password changed")


@keyring_app.command("disable")
def keyring_disable(ctx: typer.Context) -> None:
    """Delete every stored password."""
    with _runtime(ctx) as runtime, _errors_to_exit():
        runtime.keyring.disable()
    typer.echo("Password storage disabled")


if __name__ == "__main__":
    app()
