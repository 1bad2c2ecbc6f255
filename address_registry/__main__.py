import asyncio
import logging
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

from address_registry.config import settings
from address_registry.errors import AddressNotFound, GeocodingUnavailable, InvalidAddress
from address_registry.feedback import FeedbackLearner
from address_registry.geocoder import GoogleGeocoder
from address_registry.llm_client import LLMClient
from address_registry.matcher import AddressMatcher
from address_registry.models import CanonicalAddress, OptimizationReport
from address_registry.optimizer import AddressOptimizer
from address_registry.repository import AddressRepository
from address_registry.store import JsonFileAddressStore
from address_registry.summarizer import SummaryGenerator

app = typer.Typer(help="Address Registry - Canonical addresses, deduplicated")
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_store() -> JsonFileAddressStore:
    return JsonFileAddressStore(settings.store_path)


def build_repository(store: JsonFileAddressStore) -> AddressRepository:
    geocoder = GoogleGeocoder(
        api_key=settings.google_maps_api_key,
        region=settings.matching.geocoder_region,
        timeout=settings.matching.geocoder_timeout,
    )
    matcher = AddressMatcher(
        store,
        geocoder,
        proximity_threshold_m=settings.matching.proximity_threshold_meters,
    )
    return AddressRepository(
        store, matcher, geohash_precision=settings.optimization.geohash_precision
    )


def build_optimizer(store: JsonFileAddressStore) -> AddressOptimizer:
    return AddressOptimizer(
        store,
        cluster_distance_m=settings.optimization.cluster_distance_meters,
        similarity_threshold=settings.optimization.similarity_threshold,
        geohash_precision=settings.optimization.geohash_precision,
    )


def show_address(address: CanonicalAddress):
    """Display one canonical address with its aliases and descriptions."""
    table = Table(title=address.formatted_address, box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("ID", address.id)
    table.add_row("Location", f"{address.location.lat:.6f}, {address.location.lng:.6f}")
    table.add_row("Geohash", address.geohash)
    table.add_row("Confidence", f"{address.confidence:.2f}")
    table.add_row("Aliases", "\n".join(a.raw_text for a in address.aliases) or "-")
    table.add_row("Descriptions", str(len(address.descriptions)))
    table.add_row("Summary", address.summary or "-")

    console.print()
    console.print(table)
    console.print()


def show_report(report: OptimizationReport):
    """Display the counts from an optimization pass."""
    table = Table(title="Optimization Pass", box=box.ROUNDED)
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Count", style="green", justify="right")

    table.add_row("Records scanned", str(report.total_records))
    table.add_row("Clusters found", str(report.clusters_found))
    table.add_row("Clusters merged", str(report.clusters_merged))
    table.add_row("Records deleted", str(report.records_deleted))
    table.add_row("Records refreshed", str(report.records_refreshed))
    table.add_row("Errors", str(len(report.errors)))

    console.print()
    console.print(table)
    for error in report.errors:
        console.print(f"[red]✗ {', '.join(error.cluster_ids)}: {error.message}[/red]")
    console.print()


def _fail(message: str, code: int = 1):
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code)


@app.command()
def resolve(address: str = typer.Argument(..., help="Free-text address")):
    """Look up an address without creating anything."""
    store = build_store()
    repository = build_repository(store)

    try:
        result = asyncio.run(repository.matcher.resolve(address))
    except InvalidAddress as e:
        _fail(f"Invalid address: {e.reason}")
    except GeocodingUnavailable as e:
        _fail(f"Geocoding unavailable: {e}", code=2)

    if not result.found:
        console.print(f"[yellow]No canonical address yet for:[/yellow] {result.geocoded.formatted_address}")
        return
    console.print(f"[green]✓ Matched by {result.tier}[/green]")
    show_address(result.address)


@app.command()
def add(address: str = typer.Argument(..., help="Free-text address")):
    """Find or create the canonical record for an address."""
    store = build_store()
    repository = build_repository(store)

    try:
        record = asyncio.run(repository.create_or_update(address))
    except InvalidAddress as e:
        _fail(f"Invalid address: {e.reason}")
    except GeocodingUnavailable as e:
        _fail(f"Geocoding unavailable: {e}", code=2)

    show_address(record)


@app.command()
def contribute(
    address: str = typer.Argument(..., help="Free-text address"),
    description: str = typer.Argument(..., help="How to find the entrance"),
    contributor: Optional[str] = typer.Option(None, "--contributor", "-c", help="Contributor ID"),
):
    """Add a description to an address, creating the address if needed."""
    store = build_store()
    repository = build_repository(store)

    try:
        result = asyncio.run(repository.contribute(address, description, contributor))
    except InvalidAddress as e:
        _fail(f"Invalid address: {e.reason}")
    except GeocodingUnavailable as e:
        _fail(f"Geocoding unavailable: {e}", code=2)
    except ValueError as e:
        _fail(str(e))

    label = "new address" if result.is_new_address else "existing address"
    console.print(f"[green]✓ Description added to {label} {result.address_id}[/green]")


@app.command()
def show(address_id: str = typer.Argument(..., help="Canonical address ID")):
    """Show a canonical address by ID."""
    store = build_store()
    record = asyncio.run(store.get(address_id))
    if record is None:
        _fail(str(AddressNotFound(address_id)))
    show_address(record)


@app.command()
def optimize(
    dry_run: bool = typer.Option(False, "--dry-run", help="Only list duplicate clusters"),
):
    """Merge near-duplicate addresses. Safe to run by hand or from cron."""
    store = build_store()
    optimizer = build_optimizer(store)

    if dry_run:
        clusters = optimizer.find_clusters(asyncio.run(store.list_all()))
        if not clusters:
            console.print("[green]No duplicate clusters found.[/green]")
            return
        for i, cluster in enumerate(clusters, 1):
            primary = optimizer.select_primary(cluster)
            lines = [
                f"{'★' if a.id == primary.id else ' '} {a.id}  {a.formatted_address}"
                for a in cluster
            ]
            console.print(Panel("\n".join(lines), title=f"Cluster {i}", border_style="yellow"))
        return

    report = asyncio.run(optimizer.run_optimization_pass())
    show_report(report)
    if not report.ok:
        raise typer.Exit(1)


@app.command()
def summarize():
    """Regenerate LLM summaries for addresses with new descriptions."""
    store = build_store()
    try:
        llm_client = LLMClient.from_settings()
    except ValueError as e:
        _fail(str(e))

    generator = SummaryGenerator(
        store, llm_client, freshness_window=timedelta(hours=settings.summary.freshness_hours)
    )
    report = asyncio.run(generator.generate_summaries())
    console.print(
        f"[green]✓ {len(report.updated)} updated[/green], "
        f"{len(report.skipped)} skipped, "
        f"[red]{len(report.errors)} errors[/red]"
    )
    if report.errors:
        raise typer.Exit(1)


@app.command()
def feedback(
    address_id: str = typer.Argument(..., help="Canonical address ID the input was matched to"),
    input_address: str = typer.Argument(..., help="Text that was entered"),
    wrong: bool = typer.Option(False, "--wrong", help="The match was incorrect"),
    comment: Optional[str] = typer.Option(None, "--comment", help="Optional note"),
):
    """Record whether an input was matched to the right address."""
    store = build_store()
    record = asyncio.run(store.get(address_id))
    if record is None:
        _fail(str(AddressNotFound(address_id)))

    learner = FeedbackLearner(store)
    try:
        asyncio.run(learner.record_feedback(
            address_id, not wrong, input_address, record.formatted_address, comment
        ))
    except ValueError as e:
        _fail(str(e))

    verdict = "negative" if wrong else "positive"
    console.print(f"[green]✓ Recorded {verdict} feedback for {address_id}[/green]")


@app.command("match-confidence")
def match_confidence(
    input_address: str = typer.Argument(..., help="Text that was entered"),
    candidate: str = typer.Argument(..., help="Formatted address it might match"),
):
    """Show how often matches like this one were confirmed by feedback."""
    learner = FeedbackLearner(build_store())
    score = asyncio.run(learner.get_matching_confidence(input_address, candidate))
    console.print(f"Learned confidence: [cyan]{score:.2f}[/cyan]")


if __name__ == "__main__":
    app()
