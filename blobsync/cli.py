#!/usr/bin/env python3
"""CLI commands for the blob cache."""

import asyncio
import sys
from pathlib import Path

import click

from blobsync.content_store.config import get_content_store
from blobsync.content_store.monitor import CacheMonitor
from blobsync.content_store.store import ContentStore
from blobsync.core.config import GIB, EvictionPolicy, settings
from blobsync.core.errors import NotFoundError
from blobsync.core.hashing import normalize_hash
from blobsync.core.logging import configure_logging
from blobsync.ledger import UsageLedger

LEDGER_FILENAME = "usage.db"


def _require_store() -> ContentStore:
    store = get_content_store()
    if store is None:
        click.echo("Error: Cache not configured", err=True)
        click.echo("Set CACHE_PATH environment variable", err=True)
        sys.exit(1)
    return store


def _open_ledger(store: ContentStore) -> UsageLedger:
    return UsageLedger(store.store_path / LEDGER_FILENAME)


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level):
    """Blob cache management commands."""
    configure_logging(level=log_level or settings.LOG_LEVEL, json_logs=settings.JSON_LOGS)


@cli.command()
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Also write a JSON report")
def status(output):
    """Show cache size, budget and most seen hashes."""
    store = _require_store()
    monitor = CacheMonitor(store, settings.budget_bytes, ledger=_open_ledger(store))
    monitor.print_summary()

    if output:
        monitor.export_report(output)
        click.echo(f"Report saved to: {output}")


@cli.command()
@click.option("--to-gib", type=float, default=None, help="Target size in GiB")
@click.option(
    "--policy",
    type=click.Choice([p.value for p in EvictionPolicy]),
    default=None,
    help="Eviction policy for this run",
)
def trim(to_gib, policy):
    """Evict entries until the cache fits its budget."""
    from blobsync.eviction import EvictionEngine

    store = _require_store()
    engine = EvictionEngine(store, settings.snapshot, ledger=_open_ledger(store))

    report = engine.trim(
        budget_bytes=int(to_gib * GIB) if to_gib is not None else None,
        policy=EvictionPolicy(policy) if policy else None,
    )

    if report.skipped:
        click.echo("Another eviction sweep is running; nothing done")
        return
    click.echo(f"Policy: {report.policy.value}")
    click.echo(f"Evicted: {report.evicted} entries ({report.freed_bytes / 1024 / 1024:.2f} MB)")
    if report.deferred:
        click.echo(f"Deferred (in use): {len(report.deferred)}")
    click.echo(f"Store size: {store.total_size_bytes() / 1024 / 1024:.2f} MB")


@cli.command("rebuild-index")
def rebuild_index():
    """Rebuild the entry index from the files on disk."""
    store = _require_store()
    count = store.rebuild_index()
    click.echo(f"Indexed {count} entries")


@cli.command()
@click.argument("content_hash")
def usage(content_hash):
    """Inspect a specific content hash."""
    try:
        content_hash = normalize_hash(content_hash)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    store = _require_store()
    ledger = _open_ledger(store)

    click.echo(f"Content Hash: {content_hash}")
    entry = store.get_entry(content_hash)
    if entry is None:
        click.echo("Cached: no")
    else:
        click.echo("Cached: yes")
        click.echo(f"  Size: {entry.size_bytes:,} bytes")
        click.echo(f"  Created: {entry.created_at.isoformat()}")
        click.echo(f"  Last accessed: {entry.last_accessed_at.isoformat()}")
        click.echo(f"  In use: {'yes' if store.is_in_use(content_hash) else 'no'}")

    last_seen = ledger.last_global_seen(content_hash)
    click.echo(f"Peer sightings: {ledger.frequency_rank(content_hash)}")
    click.echo(f"Events recorded: {ledger.count_events(content_hash)}")
    click.echo(f"Last seen: {last_seen.isoformat() if last_seen else 'never'}")


@cli.command()
@click.argument("hashes", nargs=-1, required=True)
@click.option("--peer", "peer_id", default=None, help="Peer the hashes belong to")
@click.option("--server", default=None, help="File server URL (default FILE_SERVER_URL)")
def fetch(hashes, peer_id, server):
    """Download the given hashes into the cache."""
    from blobsync.eviction import EvictionEngine
    from blobsync.transfer import HttpBlobFetcher, TransferOrchestrator

    store = _require_store()
    ledger = _open_ledger(store)
    EvictionEngine(store, settings.snapshot, ledger=ledger).attach()

    async def run() -> int:
        fetcher = HttpBlobFetcher(server or settings.FILE_SERVER_URL)
        orchestrator = TransferOrchestrator(store, fetcher, settings.snapshot, ledger=ledger)
        failures = 0
        try:
            async for outcome in orchestrator.fetch_all(hashes, peer_id=peer_id):
                line = f"{outcome.hash[:16]}... {outcome.kind.value}"
                if outcome.reason:
                    line += f": {outcome.reason}"
                click.echo(line)
                failures += 0 if outcome.ok else 1
        finally:
            await fetcher.aclose()
        return failures

    failures = asyncio.run(run())
    if failures:
        sys.exit(1)


@cli.command()
@click.argument("content_hash")
@click.argument("destination", type=click.Path(dir_okay=False, path_type=Path))
def export(content_hash, destination):
    """Copy a cached blob to DESTINATION."""
    store = _require_store()
    try:
        with store.open(normalize_hash(content_hash)) as src, open(destination, "wb") as dst:
            for chunk in iter(lambda: src.read(1024 * 1024), b""):
                dst.write(chunk)
    except (ValueError, NotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Wrote {destination}")


if __name__ == "__main__":
    cli()
