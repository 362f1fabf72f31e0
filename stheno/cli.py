"""Command-line interface for Stheno.

Commands:
- build: Build the site incrementally into the output directory.
- invalidate: Record tag or path invalidations for the next build.
- serve: Run the development server with live reload.
- status: Show what the build cache currently holds.
"""

from __future__ import annotations

from pathlib import Path

import click
import yaml

from . import __version__
from .config import cache_dir_for, load_config, load_isg_settings
from .context import ExecutionContext, utc_now
from .errors import (
    BuildLockError,
    CacheDirectoryError,
    ConfigError,
    InvalidInvalidationQuery,
    ManifestWriteFailed,
)
from .invalidation import InvalidationGateway
from .log import configure_logging
from .manifest import ManifestStore


def _load(project_root: Path, verbose: bool = False) -> dict:
    try:
        config = load_config(project_root)
    except (OSError, yaml.YAMLError) as exc:
        raise click.ClickException(f"Cannot read stheno.yaml: {exc}") from exc
    configure_logging("DEBUG" if verbose else config.get("log_level", "INFO"))
    return config


def _store(project_root: Path, config: dict) -> ManifestStore:
    try:
        settings = load_isg_settings(config)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    return ManifestStore(cache_dir_for(project_root, config), pending_ttl=settings.pending_ttl)


@click.group()
@click.version_option(version=__version__, prog_name="stheno")
def cli():
    """Stheno static site generator with incremental builds."""


@cli.command()
@click.option("--force", is_flag=True, help="Re-render every page, ignoring the cache")
@click.option("--clean", is_flag=True, help="Discard the cache and output first")
@click.option("--drafts", is_flag=True, help="Include draft content")
@click.option("--verbose", "-v", is_flag=True, help="Log every freshness decision")
def build(force: bool, clean: bool, drafts: bool, verbose: bool):
    """Build the site into the output directory."""
    project_root = Path.cwd()
    config = _load(project_root, verbose)
    from .build import SiteBuilder

    ctx = ExecutionContext(force=force, clean=clean, include_drafts=drafts)
    try:
        builder = SiteBuilder(project_root, config=config)
        result = builder.build(ctx)
    except (ConfigError, CacheDirectoryError, BuildLockError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc

    if result.failures:
        click.echo(click.style("Build failed:", fg="red", bold=True), err=True)
        for failure in result.failures:
            try:
                rel_path = failure.source_path.relative_to(project_root)
            except ValueError:
                rel_path = failure.source_path
            click.echo(click.style(f"  File: {rel_path}", fg="yellow"), err=True)
            click.echo(click.style(f"  Error: {failure.message}", fg="white"), err=True)

    summary = (
        f"Built {len(result.pages)} pages into {result.output_dir} "
        f"({len(result.rendered)} rendered, {len(result.skipped)} cached"
    )
    if result.pruned:
        summary += f", {len(result.pruned)} removed"
    click.echo(summary + ")")
    if not result.manifest_saved:
        click.echo(
            click.style("Warning: cache manifest was not saved", fg="yellow"), err=True
        )
    if result.failures:
        raise SystemExit(1)


@cli.command()
@click.argument("queries", nargs=-1, required=True)
def invalidate(queries: tuple[str, ...]):
    """Invalidate cached pages by tag or path.

    QUERIES are tag=<tag> or path=<glob>, e.g. tag=news path=/blog/**.
    Matching pages are rebuilt by the next build.
    """
    project_root = Path.cwd()
    config = _load(project_root)
    store = _store(project_root, config)
    gateway = InvalidationGateway(store, utc_now)
    try:
        store.ensure_directory()
        records = gateway.invalidate(queries)
    except (InvalidInvalidationQuery, CacheDirectoryError, ManifestWriteFailed) as exc:
        raise click.ClickException(str(exc)) from exc
    for record in records:
        click.echo(f"Invalidated {record.kind}={record.value}")


@cli.command()
@click.option("--drafts", is_flag=True, help="Include draft content")
@click.option(
    "--port",
    type=int,
    required=False,
    help="Port to run the dev server (overrides stheno.yaml)",
)
@click.option(
    "--ws-port",
    type=int,
    required=False,
    help="Port for the live reload websocket server (overrides stheno.yaml ws_port)",
)
def serve(drafts: bool, port: int | None, ws_port: int | None):
    """Run dev server with live reload."""
    project_root = Path.cwd()
    _load(project_root)
    from .server import DevServer

    try:
        server = DevServer(project_root, http_port=port, ws_port=ws_port, include_drafts=drafts)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    server.start()


@cli.command()
def status():
    """Show cached pages and pending invalidations."""
    project_root = Path.cwd()
    config = _load(project_root)
    store = _store(project_root, config)
    manifest = store.load()
    click.echo(f"Manifest: {store.path}")
    click.echo(f"Cached pages: {len(manifest.entries)}")
    forced = sorted(url for url, entry in manifest.entries.items() if entry.force_rebuild)
    if forced:
        click.echo(f"Pages awaiting forced rebuild: {', '.join(forced)}")
    if not manifest.pending_invalidations:
        click.echo("Pending invalidations: none")
        return
    click.echo(f"Pending invalidations: {len(manifest.pending_invalidations)}")
    for record in manifest.pending_invalidations:
        click.echo(f"  {record.kind}={record.value} (requested {record.requested_at.isoformat()})")


def main():
    """Entry point for the CLI application."""
    cli()
