"""
CLI entry point for testlens.

Uses Click for argument parsing. Every command prints through the rich
Reporter and exits with status 1 on errors.
"""

import json
import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import click
import psycopg
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from . import __version__
from .config import ConfigError, Settings
from .database import (
    DatabaseConnection,
    DatabaseError,
    PostgresAnomalyStore,
    PostgresHistoryStore,
    create_schema,
)
from .ingest import IngestionError, IngestionService, TestRunIngest
from .log_parser import parse_job_log, parse_job_outcomes
from .models import AnomalyFilter, AnomalyType, ExecutionHistoryEntry
from .reporting import Reporter, write_json_report
from .store import (
    AnomalyNotFoundError,
    AnomalyStore,
    HistoryStore,
    MemoryAnomalyStore,
    MemoryHistoryStore,
)

logger = logging.getLogger(__name__)


HANDLED_ERRORS = (
    AnomalyNotFoundError,
    ConfigError,
    DatabaseError,
    IngestionError,
    OSError,
    psycopg.Error,
)


@dataclass
class CliState:
    """Objects shared by all subcommands."""
    reporter: Reporter
    verbose: bool = False


def _configure_logging(verbose: bool, no_color: bool) -> None:
    """Send testlens log records to stderr, through Rich unless color is off."""
    package_logger = logging.getLogger("testlens")
    for existing in list(package_logger.handlers):
        package_logger.removeHandler(existing)

    if no_color:
        handler: logging.Handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    else:
        handler = RichHandler(console=Console(stderr=True), show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))

    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


@contextmanager
def _handle_errors(reporter: Reporter, verbose: bool = False) -> Iterator[None]:
    """Report known errors and exit with status 1."""
    try:
        yield
    except HANDLED_ERRORS as e:
        reporter.print_error(str(e))
        if verbose:
            logger.exception("Command failed")
        sys.exit(1)


def _load_settings() -> Settings:
    return Settings.from_env()


@contextmanager
def _open_stores(
    database_url: Optional[str],
) -> Iterator[Tuple[HistoryStore, AnomalyStore]]:
    """Yield PostgreSQL stores when a URL is given, in-memory stores otherwise."""
    if not database_url:
        yield MemoryHistoryStore(), MemoryAnomalyStore()
        return

    with DatabaseConnection(database_url) as db:
        create_schema(db)
        yield PostgresHistoryStore(db), PostgresAnomalyStore(db)


def _database_url(option: Optional[str], settings: Settings) -> Optional[str]:
    """The --database-url option, else the configured URL."""
    return option or settings.database_url


def _require_database(database_url: Optional[str]) -> str:
    if not database_url:
        raise ConfigError(
            "No database configured. Pass --database-url or set TESTLENS_DATABASE_URL."
        )
    return database_url


def _load_history(path: Path, project_id: str) -> List[ExecutionHistoryEntry]:
    """Read a JSON list of history entries, filling in the project id."""
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise IngestionError(f"{path} is not valid JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("entries", data.get("history"))
    if not isinstance(data, list):
        raise IngestionError(f"{path} must contain a list of history entries")

    entries = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise IngestionError(f"History entry {i} in {path} is not an object")
        try:
            entry = ExecutionHistoryEntry.from_dict(item, project_id=project_id, index=i)
        except (TypeError, ValueError) as e:
            raise IngestionError(f"History entry {i} in {path}: {e}") from e
        entries.append(entry)
    return entries


database_url_option = click.option(
    "--database-url",
    help="PostgreSQL connection URL (default: TESTLENS_DATABASE_URL or DATABASE_URL)",
)

json_option = click.option(
    "--json",
    "json_output",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write JSON report to file",
)

timestamps_option = click.option(
    "--timestamps",
    is_flag=True,
    help="Strip leading ISO-8601 timestamps from log lines",
)


@click.group()
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Verbose output (error details, debug logging)",
)
@click.option(
    "-q", "--quiet",
    is_flag=True,
    help="Quiet mode (errors only)",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.version_option(version=__version__, prog_name="testlens")
@click.pass_context
def main(ctx: click.Context, verbose: bool, quiet: bool, no_color: bool):
    """
    testlens: CI log parsing and test anomaly detection

    \b
    Examples:
        testlens steps job.log                    # List the steps of a job log
        testlens parse job.log --json out.json    # Extract test outcomes
        testlens detect history.json -p web       # Flaky/slow/failing tests
        testlens ingest run.json --log job.log    # Store a run
        testlens anomalies list --unresolved      # Open anomalies
    """
    _configure_logging(verbose, no_color)
    ctx.obj = CliState(
        reporter=Reporter(verbose=verbose, quiet=quiet, no_color=no_color),
        verbose=verbose,
    )


@main.command()
@click.argument("logfile", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@timestamps_option
@click.pass_obj
def steps(state: CliState, logfile: Path, timestamps: bool):
    """List the steps of a CI job log."""
    with _handle_errors(state.reporter, state.verbose):
        raw_log = logfile.read_text(errors="replace")
        state.reporter.print_steps(parse_job_log(raw_log, strip_timestamps=timestamps))


@main.command()
@click.argument("logfile", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@timestamps_option
@json_option
@click.pass_obj
def parse(state: CliState, logfile: Path, timestamps: bool, json_output: Optional[Path]):
    """Extract test outcomes from every step of a CI job log."""
    reporter = state.reporter
    with _handle_errors(reporter, state.verbose):
        raw_log = logfile.read_text(errors="replace")
        results = parse_job_outcomes(raw_log, strip_timestamps=timestamps)

        for step, outcomes in results:
            if outcomes or state.verbose:
                reporter.print_outcomes(outcomes, title=f"{step.step_number}. {step.name}")

        total = sum(len(outcomes) for _, outcomes in results)
        reporter.print(f"\n{total} test results in {len(results)} steps")

        if json_output:
            write_json_report(json_output, steps=results)
            reporter.print(f"JSON report written to {escape(str(json_output))}")


@main.command()
@click.argument(
    "history_file",
    required=False,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("-p", "--project", "project_id", required=True, help="Project id")
@database_url_option
@json_option
@click.pass_obj
def detect(
    state: CliState,
    history_file: Optional[Path],
    project_id: str,
    database_url: Optional[str],
    json_output: Optional[Path],
):
    """
    Detect flaky, slow and frequently failing tests.

    HISTORY_FILE is a JSON list of execution history entries. Without a
    database they are analysed in memory; with one they are appended to
    the stored history first, and new anomalies are persisted.
    """
    reporter = state.reporter
    with _handle_errors(reporter, state.verbose):
        settings = _load_settings()
        database_url = _database_url(database_url, settings)
        if history_file is None:
            _require_database(database_url)
        entries = _load_history(history_file, project_id) if history_file else []

        with _open_stores(database_url) as (history_store, anomaly_store):
            service = IngestionService(history_store, anomaly_store, settings=settings)
            history_store.append(entries)
            result = service.run_detection(project_id)

        reporter.print_anomalies(result.candidates)
        reporter.print_detection_summary(result)

        if json_output:
            write_json_report(json_output, anomalies=result.candidates)
            reporter.print(f"JSON report written to {escape(str(json_output))}")


@main.command()
@click.argument("run_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--log", "log_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Raw CI job log to parse and add to the run",
)
@click.option("--detect/--no-detect", "run_detection", default=False,
              help="Run anomaly detection after ingesting")
@database_url_option
@click.pass_obj
def ingest(
    state: CliState,
    run_file: Path,
    log_file: Optional[Path],
    run_detection: bool,
    database_url: Optional[str],
):
    """Ingest a test run (JSON payload as sent by a reporter)."""
    reporter = state.reporter
    with _handle_errors(reporter, state.verbose):
        settings = _load_settings()
        try:
            payload = json.loads(run_file.read_text())
        except json.JSONDecodeError as e:
            raise IngestionError(f"{run_file} is not valid JSON: {e}") from e
        run = TestRunIngest.from_dict(payload)
        raw_log = log_file.read_text(errors="replace") if log_file else None
        database_url = _database_url(database_url, settings)

        if not database_url:
            logger.warning("No database configured, results are not persisted")

        with _open_stores(database_url) as (history_store, anomaly_store):
            service = IngestionService(history_store, anomaly_store, settings=settings)
            result = service.ingest(run, raw_log=raw_log)
            detection = service.run_detection(result.project_id) if run_detection else None

        reporter.print(
            f"Recorded [cyan]{result.recorded}[/cyan] tests "
            f"({result.from_log} from log) for [bold]{escape(result.project_id)}[/bold], "
            f"run {result.run_id}: {result.status.value}"
        )
        if result.converted_running:
            reporter.print(
                f"{result.converted_running} unfinished tests recorded as failed",
                style="yellow",
            )
        if detection is not None:
            reporter.print_detection_summary(detection)


@main.group()
def anomalies():
    """Query and resolve stored anomalies."""


@anomalies.command("list")
@click.option("-p", "--project", "project_id", help="Only this project")
@click.option(
    "-t", "--type", "anomaly_type",
    type=click.Choice([t.value for t in AnomalyType]),
    help="Only this anomaly type",
)
@click.option("--resolved/--unresolved", default=None, help="Filter by resolution")
@database_url_option
@json_option
@click.pass_obj
def list_anomalies(
    state: CliState,
    project_id: Optional[str],
    anomaly_type: Optional[str],
    resolved: Optional[bool],
    database_url: Optional[str],
    json_output: Optional[Path],
):
    """List anomalies, newest first."""
    reporter = state.reporter
    with _handle_errors(reporter, state.verbose):
        settings = _load_settings()
        url = _require_database(_database_url(database_url, settings))
        query = AnomalyFilter(
            project_id=project_id,
            type=AnomalyType(anomaly_type) if anomaly_type else None,
            resolved=resolved,
        )
        with _open_stores(url) as (history_store, anomaly_store):
            service = IngestionService(history_store, anomaly_store, settings=settings)
            found = service.list_anomalies(query)

        reporter.print_anomalies(found)
        if json_output:
            write_json_report(json_output, anomalies=found)
            reporter.print(f"JSON report written to {escape(str(json_output))}")


@anomalies.command("resolve")
@click.argument("anomaly_id")
@database_url_option
@click.pass_obj
def resolve_anomaly(state: CliState, anomaly_id: str, database_url: Optional[str]):
    """Mark an anomaly as resolved."""
    reporter = state.reporter
    with _handle_errors(reporter, state.verbose):
        settings = _load_settings()
        url = _require_database(_database_url(database_url, settings))
        with _open_stores(url) as (history_store, anomaly_store):
            service = IngestionService(history_store, anomaly_store, settings=settings)
            anomaly = service.resolve_anomaly(anomaly_id)

        reporter.print(
            f"Resolved {anomaly.type.value} anomaly for "
            f"[cyan]{escape(anomaly.test_name)}[/cyan] ({anomaly.id})",
            style="green",
        )


if __name__ == "__main__":
    main()
