"""
asin-ledger — CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Validate inputs.
  4. Execute action (DB init, ingestion cycle, ledger read).
  5. Report result to stdout (``[OK]`` / ``[ERROR]``; exit code 1 on failure).

Install and run::

    pip install -e .
    asin-ledger --help
    asin-ledger init-db
    asin-ledger validate-config
    asin-ledger ingest B000000001 B000000002 --first-party-dir data/first_party
    asin-ledger show-current B000000001
    asin-ledger history B000000001 --limit 10
    asin-ledger stale --max-age-minutes 120
    asin-ledger dq-issues B000000001
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="asin-ledger",
    help="ASIN market-data ingestion, reconciliation and history ledger.",
    add_completion=False,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from asin_ledger.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config):
    """Set up logging from config."""
    from asin_ledger.utils.logging import configure_logging
    configure_logging(config.logging)


def _open(config):
    from asin_ledger.db.connection import get_connection

    return get_connection(
        config.database.db_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    )


_MARKETPLACE_HELP = "Internal marketplace id. Uses config default if omitted."


# ── Commands ──────────────────────────────────────────────────────────────────

@app.command("init-db")
def init_db(
    db_path: Optional[str] = typer.Option(
        None,
        "--db-path",
        help="Override DB path from config (e.g. data/db/test.db).",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Initialize the SQLite database and apply the full schema.

    Safe to run multiple times — all DDL uses IF NOT EXISTS.
    Also runs pending schema migrations.
    """
    from asin_ledger.db.connection import get_connection
    from asin_ledger.db.migrations import run_migrations
    from asin_ledger.db.schema import ALL_TABLE_NAMES, apply_schema

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_path = db_path or config.database.db_path
    typer.echo(f"Initializing database at: {target_path}")

    with get_connection(
        target_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    ) as conn:
        apply_schema(conn)
        migrations_applied = run_migrations(conn)

    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo(f"  Migrations applied: {migrations_applied}")
    typer.echo("[OK] Database ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file (default: config/default.toml).",
    ),
    show_full: bool = typer.Option(
        False,
        "--full",
        help="Print full config including all fields (API key masked).",
    ),
) -> None:
    """Validate the configuration file and print parsed values.

    Exits with code 1 if the config fails validation.
    """
    config = _load_config_or_exit(config_path)

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Database path:    {config.database.db_path}")
    typer.echo(f"  Market API:       {config.market_api.base_url} (domain {config.market_api.domain})")
    typer.echo(f"  API key set:      {'yes' if config.market_api.api_key else 'no'}")
    typer.echo(f"  Batch size:       {config.market_api.batch_size}")
    typer.echo(f"  Fan-out:          {config.ingestion.fan_out}")
    typer.echo(f"  Cache TTL:        {config.ingestion.cache_ttl_minutes} min")
    typer.echo(f"  Marketplace:      {config.ingestion.marketplace_id}")
    typer.echo(f"  Log level:        {config.logging.level}")
    typer.echo(f"  Debug mode:       {config.debug}")

    if show_full:
        dumped = config.model_dump()
        if dumped["market_api"].get("api_key"):
            dumped["market_api"]["api_key"] = "***"
        typer.echo("")
        typer.echo("Full config (JSON):")
        typer.echo(json.dumps(dumped, indent=2, default=str))

    typer.echo("")
    typer.echo("[OK] Config valid.")


@app.command("ingest")
def ingest(
    identifiers: list[str] = typer.Argument(..., help="ASINs to refresh."),
    marketplace: Optional[int] = typer.Option(None, "--marketplace", "-m", help=_MARKETPLACE_HELP),
    force: bool = typer.Option(
        False,
        "--force",
        help="Refetch even identifiers whose snapshot is still within the cache TTL.",
    ),
    first_party_dir: Optional[str] = typer.Option(
        None,
        "--first-party-dir",
        help="Directory of <ASIN>.json first-party exports. Uses config default if omitted.",
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        help="Path to TOML config file.",
    ),
) -> None:
    """Run one ingestion cycle: fetch, reconcile and persist each ASIN.

    Requires KEEPA_API_KEY (in .env or the environment). Per-ASIN failures
    are reported but do not fail the command; a cycle-level error does.
    """
    from asin_ledger.ingestion.first_party import JsonFileFirstPartySource
    from asin_ledger.pipeline.ingest import BatchIngestion

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    if not config.market_api.api_key:
        typer.echo("[ERROR] KEEPA_API_KEY is not set.", err=True)
        raise typer.Exit(code=1)

    fp_dir = first_party_dir or config.ingestion.first_party_dir
    first_party = JsonFileFirstPartySource(fp_dir) if fp_dir else None

    try:
        with _open(config) as conn:
            runner = BatchIngestion(conn, config, first_party=first_party)
            result = runner.run_cycle(identifiers, marketplace, force=force)
    except Exception as exc:
        typer.echo(f"[ERROR] Ingestion failed: {exc}", err=True)
        raise typer.Exit(code=1)

    job = result.job
    if result.skipped:
        typer.echo(f"[ERROR] Skipped (job {job.job_id}): {job.error_message}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Job {job.job_id}: {job.status}")
    typer.echo(f"  Requested: {job.asin_count}")
    typer.echo(f"  Cached:    {len(result.cached)}")
    typer.echo(f"  Succeeded: {job.asins_succeeded}")
    typer.echo(f"  Failed:    {job.asins_failed}")
    for ident in result.failed:
        outcome = result.results[ident]
        typer.echo(f"    {ident}: {outcome.error_kind} — {outcome.error}")
    typer.echo("[OK] Ingestion cycle complete.")


@app.command("show-current")
def show_current(
    identifier: str = typer.Argument(..., help="ASIN to show."),
    marketplace: Optional[int] = typer.Option(None, "--marketplace", "-m", help=_MARKETPLACE_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Print the materialized current state of one ASIN."""
    from asin_ledger.reporting.formatters import format_current_view
    from asin_ledger.reporting.reader import get_current_state

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    mkt = marketplace if marketplace is not None else config.ingestion.marketplace_id

    with _open(config) as conn:
        view = get_current_state(conn, identifier, mkt)

    if view is None:
        typer.echo(f"[ERROR] No current state for {identifier.upper()} in marketplace {mkt}.", err=True)
        raise typer.Exit(code=1)
    typer.echo(format_current_view(view))


@app.command("history")
def history(
    identifier: str = typer.Argument(..., help="ASIN to show."),
    marketplace: Optional[int] = typer.Option(None, "--marketplace", "-m", help=_MARKETPLACE_HELP),
    limit: int = typer.Option(30, "--limit", "-n", help="Maximum snapshots to show."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Print snapshot history for one ASIN, newest first."""
    from asin_ledger.reporting.formatters import format_history_table
    from asin_ledger.reporting.reader import get_snapshot_history

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    mkt = marketplace if marketplace is not None else config.ingestion.marketplace_id

    with _open(config) as conn:
        snapshots = get_snapshot_history(conn, identifier, mkt, limit=limit)

    if not snapshots:
        typer.echo(f"No snapshots for {identifier.upper()} in marketplace {mkt}.")
        return
    typer.echo(format_history_table(snapshots))


@app.command("stale")
def stale(
    max_age_minutes: Optional[int] = typer.Option(
        None,
        "--max-age-minutes",
        help="Staleness threshold. Defaults to the ingestion cache TTL.",
    ),
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum ASINs to list."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """List ASINs whose current state is older than the threshold, oldest first."""
    from asin_ledger.reporting.reader import get_identifiers_needing_refresh

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    max_age = max_age_minutes if max_age_minutes is not None else config.ingestion.cache_ttl_minutes

    with _open(config) as conn:
        identifiers = get_identifiers_needing_refresh(conn, max_age, limit=limit)

    typer.echo(f"{len(identifiers)} ASIN(s) older than {max_age} minute(s).")
    for ident in identifiers:
        typer.echo(f"  {ident}")


@app.command("dq-issues")
def dq_issues(
    identifier: str = typer.Argument(..., help="ASIN to inspect."),
    marketplace: Optional[int] = typer.Option(None, "--marketplace", "-m", help=_MARKETPLACE_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """List OPEN data-quality issues for one ASIN."""
    from asin_ledger.reporting.formatters import format_dq_issues
    from asin_ledger.reporting.reader import get_open_dq_issues

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    mkt = marketplace if marketplace is not None else config.ingestion.marketplace_id

    with _open(config) as conn:
        issues = get_open_dq_issues(conn, identifier, mkt)

    if not issues:
        typer.echo(f"[OK] No open issues for {identifier.upper()}.")
        return
    typer.echo(f"{len(issues)} open issue(s) for {identifier.upper()}:")
    typer.echo(format_dq_issues(issues))


# ── Entry point ───────────────────────────────────────────────────────────────

if __name__ == "__main__":
    app()
