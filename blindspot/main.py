"""
blindspot — CLI entrypoint.

Usage:
    blindspot --help
    blindspot init
    blindspot install rg BurntSushi/ripgrep
    blindspot update
    blindspot revert rg
"""

from __future__ import annotations

import json
import os

import click

from blindspot import __version__
from blindspot.core.observability.logging_config import resolve_level, setup_logging
from blindspot.ui.cli.common import fail, get_engine, get_settings


@click.group()
@click.version_option(version=__version__, prog_name="blindspot")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, debug: bool) -> None:
    """The blindspot package manager — single static binaries, no root."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet

    setup_logging(
        level=resolve_level(debug=debug, verbose=verbose, quiet=quiet),
        log_file=os.environ.get("BSPM_LOG_FILE"),
        log_file_level=os.environ.get("BSPM_LOG_FILE_LEVEL"),
    )


@cli.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create a fresh config file and the bin/data directories."""
    from blindspot.core.config.loader import ConfigError, ensure_dirs
    from blindspot.core.errors import BlindspotError
    from blindspot.core.persistence.registry_store import RegistryStore

    try:
        settings = get_settings(ctx)
        ensure_dirs(settings)
        created = RegistryStore(settings.config_path).create()
    except (ConfigError, BlindspotError) as e:
        fail(e)

    if created:
        click.secho(f"🎉 Created {settings.config_path}", fg="green", bold=True)
    else:
        click.secho(f"🚧 Config file {settings.config_path} already exists, not overwriting", fg="yellow")
    click.echo(f"   Binaries: {settings.bin_dir}")
    click.echo(f"   Backups:  {settings.backup_dir}")
    if str(settings.bin_dir) not in os.environ.get("PATH", "").split(os.pathsep):
        click.secho(f"   ⚠️  {settings.bin_dir} is not on your PATH", fg="yellow")
    click.echo("   🐚 Run `blindspot completion --help` for shell completion")


@cli.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, as_json: bool) -> None:
    """List currently installed packages."""
    from blindspot.core.errors import BlindspotError

    try:
        records = get_engine(ctx).list()
    except BlindspotError as e:
        fail(e)

    if as_json:
        click.echo(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return

    if not records:
        click.secho("🏜  No packages installed", fg="yellow")
        return

    for r in records:
        backup = f"  (backup: {r.backup_version})" if r.backup_version else ""
        click.secho(f"{r.name}", bold=True, nl=False)
        click.echo(f" {r.version}  {r.source}{backup}")


@cli.command()
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def info(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show the registry record of one package."""
    from blindspot.core.errors import BlindspotError

    try:
        record = get_engine(ctx).status(name)
    except BlindspotError as e:
        fail(e)

    if as_json:
        click.echo(json.dumps({**record.model_dump(mode="json"), "state": record.state.value}, indent=2))
        return

    click.secho(f"\n📦 {record.name}", fg="cyan", bold=True)
    click.echo(f"   Version:   {record.version} ({record.state.value})")
    click.echo(f"   Source:    {record.source}")
    click.echo(f"   Binary:    {record.binary_path}")
    if record.member:
        click.echo(f"   Member:    {record.member}")
    if not record.format_hint.empty:
        hint = record.format_hint
        click.echo(f"   Format:    archive={hint.archive or 'auto'} compression={hint.compression or 'auto'}")
    if record.backup_path:
        click.echo(f"   Backup:    {record.backup_version}  → {record.backup_path}")
    click.echo(f"   Installed: {record.installed_at}")
    if record.updated_at:
        click.echo(f"   Updated:   {record.updated_at}")
    click.echo()


@cli.command()
@click.argument("name", required=False)
@click.option("-n", "limit", default=20, show_default=True, help="Number of entries.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, name: str | None, limit: int, as_json: bool) -> None:
    """Show recent operations (optionally for one package)."""
    from blindspot.core.config.loader import ConfigError
    from blindspot.core.persistence.history import HistoryWriter

    try:
        settings = get_settings(ctx)
    except ConfigError as e:
        fail(e)

    entries = HistoryWriter(settings.history_path).read_recent(limit, package=name)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.secho("No history yet", fg="yellow")
        return

    colors = {"ok": "green", "noop": "white", "failed": "red"}
    for e in entries:
        change = ""
        if e.version_before and e.version_after and e.version_before != e.version_after:
            change = f"  {e.version_before} → {e.version_after}"
        elif e.version_after:
            change = f"  {e.version_after}"
        click.echo(f"{e.timestamp[:19]}  {e.operation:<9} {e.package:<20} ", nl=False)
        click.secho(f"{e.status:<6}", fg=colors.get(e.status, "white"), nl=False)
        click.echo(change)
        if e.error and ctx.obj.get("verbose"):
            click.echo(f"     │ {e.error}")


@cli.command()
@click.option(
    "--shell", "-s",
    type=click.Choice(["bash", "zsh", "fish"]),
    default="bash",
    show_default=True,
)
@click.pass_context
def completion(ctx: click.Context, shell: str) -> None:
    """Print a shell completion script.

    Examples:

        blindspot completion >> ~/.bashrc

        blindspot completion --shell fish > ~/.config/fish/completions/blindspot.fish
    """
    from click.shell_completion import get_completion_class

    comp_cls = get_completion_class(shell)
    if comp_cls is None:
        fail(f"Unsupported shell: {shell}")
    root = ctx.find_root().command
    comp = comp_cls(root, {}, "blindspot", "_BLINDSPOT_COMPLETE")
    click.echo(comp.source())


# ── Register package lifecycle commands from blindspot/ui/cli/ ────

from blindspot.ui.cli.packages import install, remove, revert, update  # noqa: E402

cli.add_command(install)
cli.add_command(update)
cli.add_command(revert)
cli.add_command(remove)
cli.add_command(remove, name="uninstall")
cli.add_command(remove, name="delete")


if __name__ == "__main__":
    cli()
