from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import anyio
import httpx
import typer
from rich.console import Console

from . import __version__
from .commands import CommandRouter
from .config import BotSettings, ConfigError, load_settings
from .cursor import FileCursorStore
from .errors import BotError
from .lockfile import LockError, acquire_lock, token_fingerprint
from .logging import get_logger, setup_logging
from .telegram.client import TelegramClient
from .telegram.loop import PollLoop

logger = get_logger(__name__)

_CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="Path to blablabot.toml.", show_default=False
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _load_settings_or_exit(config: Path | None) -> BotSettings:
    try:
        settings, config_path = load_settings(config)
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    logger.debug("config.loaded", path=str(config_path))
    return settings


def build_client(
    settings: BotSettings,
    client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> TelegramClient:
    return TelegramClient(
        settings.bot_token,
        server_url=settings.server_url,
        lenient_optional=settings.lenient_optional,
        client_factory=client_factory,
    )


def build_loop(settings: BotSettings, client: TelegramClient) -> PollLoop:
    return PollLoop(
        client,
        FileCursorStore(settings.cursor_path),
        CommandRouter(client),
        bot_name=settings.bot_name,
        poll_timeout=settings.poll_timeout,
        max_restarts=settings.max_restarts,
    )


def app_main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Long-polling Telegram bot."""


def run_cmd(
    config: Path | None = _CONFIG_OPTION,
    debug: bool = typer.Option(False, "--debug", help="Log debug output."),
) -> None:
    """Poll for updates and answer commands until /stop."""
    settings = _load_settings_or_exit(config)
    setup_logging(debug=debug, level=settings.log_level)
    try:
        lock = acquire_lock(
            cursor_path=settings.cursor_path,
            token_fingerprint=token_fingerprint(settings.bot_token),
        )
    except LockError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    with lock:
        loop = build_loop(settings, build_client(settings))
        try:
            anyio.run(loop.run)
        except KeyboardInterrupt:
            logger.info("shutdown.interrupted", offset=loop.watermark)
            raise typer.Exit(code=130) from None
        except BotError as exc:
            typer.echo(f"error: {exc}", err=True)
            raise typer.Exit(code=1) from exc


async def _whoami(client: TelegramClient, bot_name: str) -> str:
    await client.init()
    try:
        user = await client.check_bot_info(bot_name)
    finally:
        await client.close()
    return user.describe()


def whoami_cmd(
    config: Path | None = _CONFIG_OPTION,
    debug: bool = typer.Option(False, "--debug", help="Log debug output."),
) -> None:
    """Check that the token belongs to the configured bot."""
    settings = _load_settings_or_exit(config)
    setup_logging(debug=debug, level=settings.log_level)
    console = Console()
    try:
        summary = anyio.run(_whoami, build_client(settings), settings.bot_name)
    except BotError as exc:
        console.print(f"[red]identity check failed[/red]: {exc}")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]ok[/green] {summary}")


def cursor_cmd(config: Path | None = _CONFIG_OPTION) -> None:
    """Print the persisted update cursor."""
    settings = _load_settings_or_exit(config)
    try:
        value = FileCursorStore(settings.cursor_path).load()
    except BotError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"{settings.cursor_path}: {value}")


def create_app() -> typer.Typer:
    app = typer.Typer(add_completion=False, no_args_is_help=True)
    app.callback()(app_main)
    app.command(name="run")(run_cmd)
    app.command(name="whoami")(whoami_cmd)
    app.command(name="cursor")(cursor_cmd)
    return app


def main() -> None:
    app = create_app()
    app()


if __name__ == "__main__":
    main()
