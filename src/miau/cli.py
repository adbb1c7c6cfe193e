from __future__ import annotations

from pathlib import Path

import anyio
import typer

from . import __version__
from .app import BotConfig, run_bot
from .config import ConfigError
from .jids import JidFilter
from .logging import setup_logging
from .plugins import load_backend, load_handler
from .settings import MiauSettings, load_settings, require_backend


def _print_version_and_exit() -> None:
    typer.echo(__version__)
    raise typer.Exit()


def _version_callback(value: bool) -> None:
    if value:
        _print_version_and_exit()


def _build_bot_config(
    settings: MiauSettings,
    config_path: Path,
    *,
    backend_override: str | None = None,
) -> BotConfig:
    backend_id = backend_override or require_backend(settings, config_path)
    factory = load_backend(backend_id)
    handlers = tuple(load_handler(name) for name in settings.handlers)
    return BotConfig(
        name=settings.bot.name,
        factory=factory,
        auth_dir=settings.auth_dir(config_path=config_path),
        connection=settings.connection,
        handlers=handlers,
        jid_filter=JidFilter(
            ignore=settings.jids.ignore,
            patterns=settings.jids.ignore_patterns,
        ),
    )


def run(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to miau.toml (default: ~/.miau/miau.toml).",
    ),
    backend: str | None = typer.Option(
        None,
        "--backend",
        help="Session backend id; overrides `backend` from the config.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log every backend event and handler dispatch.",
    ),
) -> None:
    setup_logging(debug=debug)
    try:
        settings, config_path = load_settings(config)
        cfg = _build_bot_config(settings, config_path, backend_override=backend)
    except ConfigError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    exit_code = anyio.run(run_bot, cfg)
    if exit_code:
        raise typer.Exit(code=exit_code)


def main() -> None:
    typer.run(run)


if __name__ == "__main__":
    main()
