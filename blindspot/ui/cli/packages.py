"""
CLI commands for the package lifecycle — install, update, revert, remove.

Thin wrappers over ``blindspot.core.services.engine.Engine``.
"""

from __future__ import annotations

import json
import sys

import click

from blindspot.core.errors import BlindspotError
from blindspot.core.models.package import ArchiveKind, Compression, FormatHint
from blindspot.core.models.receipt import OperationReceipt
from blindspot.ui.cli.common import fail, get_engine, prompt_chooser


def _echo_receipt(receipt: OperationReceipt, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(receipt.model_dump(mode="json"), indent=2))
        return
    if receipt.noop:
        click.secho(f"✅ {receipt.message}", fg="white")
    else:
        click.secho(f"✅ {receipt.message}", fg="green", bold=True)


@click.command()
@click.argument("name")
@click.argument("source")
@click.option("--force", "-f", is_flag=True, help="Install anyway and overwrite an existing package.")
@click.option(
    "--compression", "-c",
    type=click.Choice([c.value for c in Compression]),
    default=None,
    help="Override compression detection.",
)
@click.option(
    "--archive", "-a",
    type=click.Choice([a.value for a in ArchiveKind]),
    default=None,
    help="Override archive detection.",
)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(
    ctx: click.Context,
    name: str,
    source: str,
    force: bool,
    compression: str | None,
    archive: str | None,
    as_json: bool,
) -> None:
    """Install a single binary from a download URL or a GitHub repo.

    NAME is the package name (and the installed file name).
    SOURCE is either a direct http(s) download URL or a GitHub
    repository as ``owner/repo``.

    Examples:

        blindspot install rg BurntSushi/ripgrep

        blindspot install jq https://example.com/jq-linux64 --force
    """
    hint = FormatHint(
        compression=Compression(compression) if compression else None,
        archive=ArchiveKind(archive) if archive else None,
    )
    try:
        receipt = get_engine(ctx).install(
            source,
            name,
            force=force,
            hint=hint,
            select_asset=prompt_chooser("Release assets"),
            select_member=prompt_chooser("Archive members"),
        )
    except BlindspotError as e:
        fail(e)

    _echo_receipt(receipt, as_json)


@click.command()
@click.argument("packages", nargs=-1)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def update(ctx: click.Context, packages: tuple[str, ...], as_json: bool) -> None:
    """Update installed packages (all of them when none are named)."""
    engine = get_engine(ctx)

    # A single package gets the interactive choosers; a batch cannot prompt.
    if len(packages) == 1:
        try:
            receipt = engine.update(
                packages[0],
                select_asset=prompt_chooser("Release assets"),
                select_member=prompt_chooser("Archive members"),
            )
        except BlindspotError as e:
            fail(e)
        _echo_receipt(receipt, as_json)
        return

    try:
        if not packages and not engine.list():
            click.secho("🏜  No packages installed", fg="yellow")
            return
        report = engine.update_many(list(packages) or None)
    except BlindspotError as e:
        fail(e)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        if report.failed:
            sys.exit(1)
        return

    for r in report.receipts:
        if r.ok:
            click.secho(f"   ⬆️  {r.package}", fg="green", nl=False)
            click.echo(f"  {r.version_before} → {r.version_after}")
        elif r.noop:
            click.secho(f"   ✓ {r.package}", fg="white", nl=False)
            click.echo(f"  {r.version_after} (up to date)")
        else:
            click.secho(f"   ✗ {r.package}", fg="red", nl=False)
            click.echo(f"  {r.error}")
            if r.inconsistent:
                click.secho("     │ state may be inconsistent", fg="yellow")
            for path in r.recovery_paths:
                click.echo(f"     │ recoverable: {path}")

    click.echo()
    color = {"ok": "green", "partial": "yellow", "failed": "red"}.get(report.status, "white")
    click.secho(
        f"   Result: {report.succeeded} updated, {report.unchanged} unchanged, {report.failed} failed",
        fg=color,
        bold=True,
    )
    if report.failed:
        sys.exit(1)


@click.command()
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def revert(ctx: click.Context, name: str, as_json: bool) -> None:
    """Revert the last update of a package (works once after every update)."""
    try:
        receipt = get_engine(ctx).rollback(name)
    except BlindspotError as e:
        fail(e)

    _echo_receipt(receipt, as_json)


@click.command()
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def remove(ctx: click.Context, name: str, as_json: bool) -> None:
    """Remove a package and its backup from disk."""
    try:
        receipt = get_engine(ctx).uninstall(name)
    except BlindspotError as e:
        fail(e)

    _echo_receipt(receipt, as_json)
