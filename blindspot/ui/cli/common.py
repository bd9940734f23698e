"""
Helpers shared by CLI commands: settings, engine, errors, prompts.
"""

from __future__ import annotations

import sys
from typing import NoReturn

import click

from blindspot.core.config.loader import ConfigError, Settings, ensure_dirs, load_settings
from blindspot.core.errors import PartialUpdateError
from blindspot.core.services.engine import Engine, build_engine
from blindspot.core.services.resolver import Chooser


def get_settings(ctx: click.Context) -> Settings:
    """Settings from context (tests) or from the environment."""
    settings = ctx.obj.get("settings")
    if settings is None:
        try:
            settings = load_settings()
        except ConfigError as e:
            fail(e)
        ctx.obj["settings"] = settings
    return settings


def get_engine(ctx: click.Context) -> Engine:
    """Engine from context (tests) or built from settings."""
    engine = ctx.obj.get("engine")
    if engine is None:
        settings = get_settings(ctx)
        try:
            ensure_dirs(settings)
        except ConfigError as e:
            fail(e)
        engine = build_engine(settings)
        ctx.obj["engine"] = engine
    return engine


def fail(error: Exception | str) -> NoReturn:
    """Print an error and exit 1."""
    click.secho(f"❌ {error}", fg="red", err=True)
    if isinstance(error, PartialUpdateError):
        click.secho("   State may be inconsistent. Recoverable copies:", fg="yellow", err=True)
        for path in error.recovery_paths:
            click.echo(f"     • {path}", err=True)
    sys.exit(1)


def prompt_chooser(title: str) -> Chooser | None:
    """An interactive chooser, or None when stdin is not a terminal."""
    if not sys.stdin.isatty():
        return None

    def choose(names: list[str], sizes: dict[str, int] | None = None) -> str:
        sizes = sizes or {}
        click.secho(f"{title} ({len(names)}):", fg="cyan")
        for i, name in enumerate(names):
            size = sizes.get(name)
            suffix = f"  ({size / 1024 / 1024:.2f} MB)" if size else ""
            click.echo(f"   -> {i}\t{name}{suffix}")
        pick = click.prompt("Choose one", type=click.IntRange(0, len(names) - 1))
        return names[pick]

    return choose
