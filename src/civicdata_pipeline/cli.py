"""
cli.py — Click CLI entrypoint for the statistics core.

Usage:
    civicdata import acs/acs5 B01001 B01001_001E B01001_002E --year 2023 --years 3 \\
        --parent-variable B01001_001E --attribute Sex --add-change
    civicdata status
    civicdata dismiss <job-id>
    civicdata recompute-summaries
    civicdata cleanup-relations --force
    civicdata delete-stat <stat-id> --dry-run
    civicdata sync-visibility
"""

from __future__ import annotations

import asyncio
import json

import click
import structlog

from civicdata_shared.config import settings
from civicdata_shared.models import ImportQueueItem
from civicdata_pipeline.exceptions import StatGraphError
from civicdata_pipeline.utils.logging import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option(
    "--log-level",
    default=settings.log_level,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Log level",
)
def main(log_level: str) -> None:
    """civicdata statistics core: imports, derived stats and relation upkeep."""
    configure_logging(log_level, force=True)


def _store():
    from civicdata_pipeline.loaders.store import SupabaseStore

    return SupabaseStore()


@main.command("import")
@click.argument("dataset")
@click.argument("group")
@click.argument("variables", nargs=-1, required=True)
@click.option("--year", type=int, required=True, help="Latest year to import.")
@click.option(
    "--years",
    type=click.IntRange(1, settings.max_import_years),
    default=1,
    show_default=True,
    help="Years back from --year.",
)
@click.option("--no-moe", is_flag=True, help="Skip margin-of-error variables.")
@click.option("--category", default=settings.default_category, show_default=True)
@click.option("--created-by", default=None, help="Owner id recorded on imported stats.")
@click.option("--parent-variable", default=None, help="Variable imported as the parent of the others.")
@click.option("--manual-parent", default=None, help="Existing stat id to link every variable under.")
@click.option("--attribute", default=None, help="Relation attribute for linked children.")
@click.option("--percent-denominator", default=None, help="Stat id for a percent child of each import.")
@click.option("--add-change", is_flag=True, help="Add a change-over-time child when --years > 1.")
def import_(
    dataset: str,
    group: str,
    variables: tuple[str, ...],
    year: int,
    years: int,
    no_moe: bool,
    category: str,
    created_by: str | None,
    parent_variable: str | None,
    manual_parent: str | None,
    attribute: str | None,
    percent_denominator: str | None,
    add_change: bool,
) -> None:
    """Queue VARIABLES for import and drain the queue."""
    from civicdata_pipeline.pipelines.import_queue import (
        DerivedOptions,
        ImportQueueOrchestrator,
        ImportSession,
        drain_summary,
    )
    from civicdata_pipeline.sources.census import CensusImportClient
    from civicdata_pipeline.utils.checkpoint import save_session_snapshot

    if parent_variable and parent_variable not in variables:
        raise click.BadParameter("must be one of the VARIABLES", param_hint="--parent-variable")

    linking = bool(parent_variable or manual_parent)
    items = [
        ImportQueueItem(
            dataset=dataset,
            group=group,
            variable=variable,
            year=year,
            years=years,
            include_moe=not no_moe,
            relationship=(
                "parent" if variable == parent_variable else "child" if linking else "none"
            ),
            stat_attribute=attribute,
        )
        for variable in variables
    ]
    session = ImportSession(
        category=category,
        created_by=created_by,
        manual_parent_id=manual_parent,
        derived=DerivedOptions(
            add_percent=percent_denominator is not None,
            percent_denominator_id=percent_denominator,
            add_change=add_change,
        ),
    )

    def checkpoint(state: ImportSession) -> None:
        save_session_snapshot(state.model_dump(mode="json"))

    async def _run() -> dict:
        async with CensusImportClient() as census:
            orchestrator = ImportQueueOrchestrator(session, census, _store(), on_change=checkpoint)
            orchestrator.enqueue(items)
            return drain_summary(await orchestrator.drain())

    click.echo(f"Importing {len(items)} variable(s) from {dataset}/{group}")
    log.info("import_start", dataset=dataset, group=group, variables=len(items), years=years)
    try:
        summary = asyncio.run(_run())
    except StatGraphError as exc:
        log.error("import_failed", error=exc.message)
        raise click.ClickException(exc.message) from exc
    log.info("import_complete", imported=len(summary["imported_stat_ids"]))
    click.echo(json.dumps(summary, indent=2))


def _reconcile_snapshot(snapshot: dict) -> dict:
    """Drop stored pending jobs whose data has reached the store."""
    from civicdata_shared.models import PendingReconciliationJob
    from civicdata_pipeline.pipelines.import_queue import find_landed_jobs
    from civicdata_pipeline.utils.checkpoint import drop_pending_jobs

    jobs = [PendingReconciliationJob.model_validate(job) for job in snapshot.get("pending_jobs", [])]
    if not jobs:
        return snapshot
    try:
        landed = asyncio.run(find_landed_jobs(jobs, _store()))
    except Exception as exc:
        log.warning("reconcile_failed", error=str(exc))
        click.echo("Could not reach the store; pending jobs not reconciled.", err=True)
        return snapshot

    dropped = set(drop_pending_jobs(job.id for job in landed))
    for job_id in sorted(dropped):
        click.echo(f"Reconciled {job_id}")
    snapshot["pending_jobs"] = [job for job in snapshot["pending_jobs"] if job.get("id") not in dropped]
    return snapshot


@main.command()
@click.option("--offline", is_flag=True, help="Skip checking pending jobs against the store.")
def status(offline: bool) -> None:
    """Show the last import session: item states and pending jobs."""
    from civicdata_pipeline.pipelines.import_queue import PENDING_IMPORT_MESSAGE
    from civicdata_pipeline.utils.checkpoint import load_session_snapshot

    snapshot = load_session_snapshot()
    if not snapshot:
        click.echo("No import session recorded.")
        return
    if not offline:
        snapshot = _reconcile_snapshot(snapshot)

    marks = {"success": "✓", "error": "✗", "running": "⟳", "pending": "·"}
    running = " (running)" if snapshot.get("is_running") else ""
    click.echo(f"Import queue{running}:")
    for item in snapshot.get("items", []):
        mark = marks.get(item.get("status"), "?")
        if item.get("error_message") == PENDING_IMPORT_MESSAGE:
            mark = "⚠"
        line = (
            f"  {mark} {item.get('variable', ''):20s} "
            f"{item.get('status', ''):8s} {item.get('imported_stat_id') or ''}"
        )
        if item.get("error_message"):
            line += f"  {item['error_message']}"
        click.echo(line)

    jobs = snapshot.get("pending_jobs", [])
    if jobs:
        click.echo("Pending reconciliation:")
        for job in jobs:
            click.echo(f"  ⚠ {job['id']}  {job.get('kind', '')}  {job.get('label', '')}")


@main.command()
@click.argument("job_id")
def dismiss(job_id: str) -> None:
    """Acknowledge a pending reconciliation job."""
    from civicdata_pipeline.utils.checkpoint import dismiss_pending_job

    if dismiss_pending_job(job_id):
        click.echo(f"Dismissed {job_id}")
    else:
        click.echo(f"No pending job {job_id}", err=True)


@main.command("recompute-summaries")
def recompute_summaries() -> None:
    """Rebuild every stat_data_summaries document from stat_data."""
    from civicdata_pipeline.loaders.summaries import SummaryAggregator

    n_keys = asyncio.run(SummaryAggregator(_store()).recompute_all())
    click.echo(f"Upserted {n_keys} summaries.")


@main.command("cleanup-relations")
@click.option("--force", is_flag=True, help="Delete instead of only reporting.")
def cleanup_relations(force: bool) -> None:
    """Find relations whose parent or child stat no longer exists."""
    from civicdata_pipeline.pipelines.stat_admin import StatAdmin

    found = asyncio.run(StatAdmin(_store()).cleanup_orphaned_relations(dry_run=not force))
    click.echo(
        f"Found {len(found.all)} orphaned relations "
        f"({len(found.missing_parent)} missing parent, {len(found.missing_child)} missing child)"
    )
    if force:
        click.echo(f"Deleted {found.deleted}.")
    elif found.all:
        click.echo("Dry run, no changes executed. Re-run with --force to delete.")


@main.command("delete-stat")
@click.argument("stat_id")
@click.option("--dry-run", is_flag=True, help="Show the cascade without deleting.")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
def delete_stat(stat_id: str, dry_run: bool, yes: bool) -> None:
    """Delete STAT_ID and every descendant left without a parent."""
    from civicdata_pipeline.pipelines.stat_admin import StatAdmin

    admin = StatAdmin(_store())
    preview = asyncio.run(admin.delete_stat(stat_id, dry_run=True))
    descendants = len(preview.plan.to_delete) - 1
    click.echo(
        f"Deletes {stat_id} and {descendants} orphaned descendant(s); "
        f"unlinks {len(preview.plan.to_unlink)} child stat(s) with other parents; "
        f"removes {preview.rows_deleted} data rows."
    )
    if dry_run:
        return
    if not yes:
        click.confirm("This cannot be undone. Continue?", abort=True)
    asyncio.run(admin.delete_stat(stat_id))
    click.echo("Deleted.")


@main.command("sync-visibility")
def sync_visibility() -> None:
    """Recompute visibility_effective for every stat."""
    from civicdata_pipeline.pipelines.stat_admin import StatAdmin

    updated = asyncio.run(StatAdmin(_store()).sync_effective_visibility())
    click.echo(f"Updated {updated} stat(s).")


if __name__ == "__main__":
    main()
