"""Tier operator CLI (tierctl).

Usage:
    tierctl fingerprint tier.yaml            # Print a tier's template fingerprint
    tierctl plan manifests/ --tier base      # Plan one admission pass offline
    tierctl run --member-clusters a,b        # Run the operator in the foreground
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

import click

from .config import DEFAULT_MAX_POOL_SIZE, DEFAULT_PAGE_SIZE, Config, ConfigurationError
from .fingerprint import compute_tier_hash
from .manifest_loader import ManifestBundle, ManifestLoadError, load_manifests
from .memory_store import InMemoryStore
from .models import MalformedTierError, NSTemplateTier, tier_states_from_labels
from .reconciler import ReconcileOutcome, ReconcileStatus, TierReconciler

# Namespace used for offline plans; never sent anywhere
PLAN_NAMESPACE = "plan"


def clusters_from_records(bundle: ManifestBundle) -> list[str]:
    """Clusters named by the tier labels of the loaded records, sorted."""
    clusters: set[str] = set()
    for record in bundle.records:
        clusters.update(tier_states_from_labels(record.labels))
    return sorted(clusters)


def outcome_to_dict(outcome: ReconcileOutcome) -> dict[str, Any]:
    data: dict[str, Any] = {"tier": outcome.tier_name, "status": outcome.status.value}
    if outcome.error is not None:
        data["error"] = str(outcome.error)
    result = outcome.result
    if result is not None:
        data.update(
            {
                "tier_hash": result.tier_hash,
                "capacity": result.capacity_at_start,
                "live": result.live_at_start,
                "reclaimable": result.reclaimable_at_start,
                "create": result.created,
                "already_existing": result.already_existing,
                "clusters_scanned": result.clusters_scanned,
                "records_scanned": result.records_scanned,
                "stale": result.stale_found,
                "in_flight": result.skipped_in_flight,
                "capacity_exhausted": result.capacity_exhausted,
            }
        )
    return data


async def plan_passes(
    bundle: ManifestBundle,
    tier_names: list[str],
    clusters: list[str],
    max_pool_size: int,
    page_size: int,
) -> list[ReconcileOutcome]:
    """Run one pass per tier against an in-memory copy of the manifests."""
    store = InMemoryStore(PLAN_NAMESPACE)
    for raw in bundle.raw_tiers:
        store.add_tier(raw)
    for record in bundle.records:
        store.add_record(record)
    for item in bundle.work_items:
        store.add_work_item(item)

    config = Config(
        member_clusters=tuple(clusters),
        namespace=PLAN_NAMESPACE,
        max_pool_size=max_pool_size,
        page_size=page_size,
    )
    reconciler = TierReconciler(config, store)
    return [await reconciler.reconcile(name) for name in tier_names]


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="tierctl")
def cli() -> None:
    """Tier operator CLI (tierctl).

    Rolls NSTemplateTier changes out to MasterUserRecords through a bounded
    pool of TemplateUpdateRequests.

    \b
    Quick Start:
        tierctl fingerprint tier.yaml
        tierctl plan manifests/
    """
    pass


@cli.command()
@click.argument("tier_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def fingerprint(tier_file: Path) -> None:
    """Print the template fingerprint of every NSTemplateTier in TIER_FILE."""
    try:
        bundle = load_manifests(tier_file)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e
    if not bundle.raw_tiers:
        raise click.ClickException(f"No NSTemplateTier found in {tier_file}")

    for raw in bundle.raw_tiers:
        try:
            tier = NSTemplateTier.from_manifest(raw)
        except MalformedTierError as e:
            raise click.ClickException(str(e)) from e
        click.echo(f"{tier.name}\t{compute_tier_hash(tier)}")


@cli.command()
@click.argument("manifests", type=click.Path(exists=True, path_type=Path))
@click.option("--tier", "-t", "tiers", multiple=True, help="Tier to plan (default: all tiers)")
@click.option(
    "--cluster",
    "-c",
    "clusters",
    multiple=True,
    help="Member cluster, in scan order (default: clusters named by record labels)",
)
@click.option("--max-pool-size", default=DEFAULT_MAX_POOL_SIZE, show_default=True, type=int)
@click.option("--page-size", default=DEFAULT_PAGE_SIZE, show_default=True, type=int)
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
def plan(
    manifests: Path,
    tiers: tuple[str, ...],
    clusters: tuple[str, ...],
    max_pool_size: int,
    page_size: int,
    as_json: bool,
) -> None:
    """Show which TemplateUpdateRequests one pass would create.

    MANIFESTS is a YAML file or a directory of YAML files holding
    NSTemplateTiers, MasterUserRecords and existing TemplateUpdateRequests.
    Nothing is sent to a cluster.
    """
    try:
        bundle = load_manifests(manifests)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    tier_names = list(tiers) or bundle.tier_names()
    if not tier_names:
        raise click.ClickException(f"No NSTemplateTier found in {manifests}")
    scan_order = list(clusters) or clusters_from_records(bundle)
    if not scan_order:
        raise click.ClickException("No member clusters given and none found in record labels")

    try:
        outcomes = asyncio.run(
            plan_passes(bundle, tier_names, scan_order, max_pool_size, page_size)
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps([outcome_to_dict(o) for o in outcomes], indent=2))
    else:
        for outcome in outcomes:
            _echo_outcome(outcome)

    if any(o.status is not ReconcileStatus.DONE for o in outcomes):
        sys.exit(1)


def _echo_outcome(outcome: ReconcileOutcome) -> None:
    if outcome.status is not ReconcileStatus.DONE:
        click.secho(f"{outcome.tier_name}: {outcome.status.value}", fg="red")
        if outcome.error is not None:
            click.echo(f"  {outcome.error}")
        return

    result = outcome.result
    if result is None:
        click.echo(f"{outcome.tier_name}: not found")
        return

    click.secho(f"{outcome.tier_name} ({result.tier_hash})", bold=True)
    click.echo(
        f"  Pool: {result.live_at_start} live, {result.reclaimable_at_start} reclaimable, "
        f"{result.capacity_at_start} free"
    )
    scanned_on = ", ".join(result.clusters_scanned) or "-"
    click.echo(f"  Scanned: {result.records_scanned} records on {scanned_on}")
    if not result.created and not result.already_existing:
        click.echo("  Nothing to create")
    for name in result.created:
        click.echo(f"  + {name}")
    for name in result.already_existing:
        click.echo(f"  = {name}")
    if result.capacity_exhausted:
        click.echo("  Pool full, remaining records wait for a later pass")


@cli.command()
@click.option("--namespace", "-n", envvar="WATCH_NAMESPACE", help="Namespace to watch")
@click.option(
    "--member-clusters", "-m", envvar="MEMBER_CLUSTERS", help="Comma-separated member clusters"
)
@click.option("--kubeconfig", envvar="KUBECONFIG", type=click.Path(exists=True, dir_okay=False))
@click.option("--dry-run/--no-dry-run", default=False, help="Plan without creating requests")
def run(
    namespace: str | None,
    member_clusters: str | None,
    kubeconfig: str | None,
    dry_run: bool,
) -> None:
    """Run the operator in the foreground against the current cluster."""
    from .main import main

    if namespace:
        os.environ["WATCH_NAMESPACE"] = namespace
    if member_clusters:
        os.environ["MEMBER_CLUSTERS"] = member_clusters
    if kubeconfig:
        os.environ["KUBECONFIG"] = kubeconfig
    if dry_run:
        os.environ["DRY_RUN"] = "true"

    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
