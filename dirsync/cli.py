"""dirsync CLI — validate configuration, inspect mappings, sweep and serve."""

import asyncio
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from dirsync import __version__
from dirsync.errors import ConfigError

console = Console()


def _load(config_path: str, dry_run: bool = False):
    from dirsync.config.loader import load_config
    from dirsync.utils.log import configure_logging, load_logging_options_from_env

    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"  [red]Failed to load configuration:[/] {e}")
        sys.exit(2)
    if dry_run:
        config.dry_run = True
    configure_logging(load_logging_options_from_env(config.logging))
    return config


@click.group()
@click.version_option(version=__version__)
def main():
    """dirsync — cross-directory membership synchronization.

    Mirrors group grants and exclusions from a primary directory onto
    replica directories, keeps selection sets exclusive, and periodically
    reconciles everything against the primary.
    """


# ── Validate ─────────────────────────────────────────────────────────


@main.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--live", is_flag=True, help="Also check directories and grants exist on the service")
def validate(config_path: str, live: bool):
    """Validate a configuration file.

    Runs the static checks, and with --live confirms every configured
    directory and grant against the directory service.
    """
    from dirsync.config.validator import validate_config, verify_against_service
    from dirsync.directory.http import HttpDirectoryService

    config = _load(config_path)
    console.print(f"\n[bold blue]dirsync[/] — Validating: {config_path}\n")

    result = validate_config(config)
    if result.errors:
        console.print("[red]Static validation FAILED:[/]")
        for issue in result.errors:
            console.print(f"  [red]x[/] [{issue.code}] {issue.message}")
    else:
        console.print("  [green]v[/] Static validation passed")

    if live and result.passed:

        async def _verify():
            service = HttpDirectoryService(
                config.service.base_url, token=config.service.token, timeout=config.service.timeout
            )
            try:
                return await verify_against_service(config, service)
            finally:
                await service.aclose()

        live_result = asyncio.run(_verify())
        result.issues.extend(live_result.issues)
        if live_result.errors:
            console.print("[red]Live validation FAILED:[/]")
            for issue in live_result.errors:
                console.print(f"  [red]x[/] [{issue.code}] {issue.message}")
        else:
            console.print("  [green]v[/] Live validation passed")

    for w in result.warnings:
        console.print(f"  [yellow]![/] [{w.code}] {w.message}")

    console.print(Panel(result.summary(), title="Validation Result"))
    if not result.passed:
        sys.exit(1)


# ── Mappings ─────────────────────────────────────────────────────────


@main.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
def mappings(config_path: str):
    """Show the group mapping and selection sets."""
    config = _load(config_path)
    replicas = config.replica_directory_ids

    console.print(
        f"\n[bold blue]dirsync[/] — Primary [cyan]{config.primary.directory_id}[/] "
        f"(marker {config.primary.member_grant_id}, pending {config.primary.pending_grant_id or '-'})\n"
    )

    table = Table(title=f"Group Mapping ({len(config.groups)} groups)")
    table.add_column("Group", style="cyan")
    table.add_column("Primary grant", style="green")
    for directory_id in replicas:
        table.add_column(directory_id)
    for group in config.groups:
        table.add_row(
            group.name,
            group.grant_id,
            *(group.replicas.get(directory_id, "[dim]-[/]") for directory_id in replicas),
        )
    console.print(table)

    for selection_set in config.selection_sets:
        kind = "exclusive" if selection_set.exclusive else "opt-in"
        sets = Table(title=f"{selection_set.title or selection_set.id} ({kind}, directory {selection_set.directory_id})")
        sets.add_column("Grant", style="green")
        sets.add_column("Name", style="cyan")
        sets.add_column("Category")
        for grant in selection_set.grants:
            sets.add_row(grant.grant_id, f"{grant.emoji} {grant.name}".strip(), grant.category)
        console.print(sets)


# ── Sweep ────────────────────────────────────────────────────────────


@main.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--dry-run", is_flag=True, help="Log intended mutations without performing them")
@click.option(
    "--snapshot",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Sweep an exported YAML snapshot instead of the live service",
)
def sweep(config_path: str, dry_run: bool, snapshot: str | None):
    """Run one reconciliation sweep and print its report.

    Exits with status 1 when any principal or replica failed.
    """
    from dirsync.directory.memory import InMemoryDirectoryService
    from dirsync.engine import SyncEngine

    config = _load(config_path, dry_run=dry_run)
    service = InMemoryDirectoryService.from_snapshot(snapshot) if snapshot else None
    source = snapshot or config.service.base_url
    console.print(f"\n[bold blue]dirsync[/] — Sweeping {source}{' [yellow](dry run)[/]' if config.dry_run else ''}\n")

    async def _run():
        engine = SyncEngine.from_config(config, service)
        try:
            await engine.validate(live=snapshot is None)
            return await engine.run_sweep()
        finally:
            await engine.service.aclose()

    try:
        report = asyncio.run(_run())
    except ConfigError as e:
        console.print("[red]Configuration invalid:[/]")
        for issue in e.issues:
            console.print(f"  [red]x[/] {issue}")
        sys.exit(2)

    table = Table(title="Sweep Report")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Principals checked", str(report.principals_checked))
    table.add_row("Marker corrections", str(report.markers_corrected))
    table.add_row("Exclusions mirrored", str(report.exclusions_mirrored))
    table.add_row("Replica grants added", str(report.grants_added))
    table.add_row("Replica grants removed", str(report.grants_removed))
    table.add_row("Multiple groups held", str(len(report.multiple_groups)))
    table.add_row("Failures", str(len(report.failures)))
    console.print(table)

    for failure in report.failures:
        console.print(f"  [red]x[/] {failure}")

    style = "green" if report.ok else "red"
    console.print(Panel(f"[{style}]{report.summary()}[/]", title="Result"))
    if not report.ok:
        sys.exit(1)


# ── Serve ────────────────────────────────────────────────────────────


@main.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
@click.option("--dry-run", is_flag=True, help="Log intended mutations without performing them")
def serve(config_path: str, host: str, port: int, dry_run: bool):
    """Run the engine behind the HTTP API.

    The directory service posts change notifications to /api/events/*.
    """
    import uvicorn

    from dirsync.engine import SyncEngine
    from web.backend.app.main import create_app

    config = _load(config_path, dry_run=dry_run)
    try:
        engine = SyncEngine.from_config(config)
    except ConfigError as e:
        console.print("[red]Configuration invalid:[/]")
        for issue in e.issues:
            console.print(f"  [red]x[/] {issue}")
        sys.exit(2)
    console.print(f"\n[bold blue]dirsync[/] — Serving on http://{host}:{port}\n")
    uvicorn.run(create_app(engine), host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
