from __future__ import annotations

from pathlib import Path
from typing import NoReturn

import anyio
import httpx
import typer

from . import __version__
from .config import ConfigError, load_config
from .dingtalk.client import DingTalkClient
from .dingtalk.errors import DingTalkApiError
from .dingtalk.token import CONTROL_TIMEOUT_S, TokenCache
from .logging import get_logger, setup_logging
from .proactive import ProactiveSender
from .settings import DingTalkSettings, account_ids, settings_for_account

logger = get_logger(__name__)

_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to dingbridge.toml (defaults to ./.dingbridge or ~/.dingbridge).",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _exit_config_error(exc: ConfigError) -> NoReturn:
    typer.echo(f"error: {exc}", err=True)
    raise typer.Exit(code=1) from exc


def _load_accounts(
    config_path: Path | None, account: str | None
) -> list[tuple[str, DingTalkSettings]]:
    try:
        config, path = load_config(config_path)
        ids = [account] if account else account_ids(config)
        return [
            (account_id, settings_for_account(config, account_id, config_path=path))
            for account_id in ids
        ]
    except ConfigError as exc:
        _exit_config_error(exc)


async def _probe(settings: DingTalkSettings) -> str | None:
    async with httpx.AsyncClient(timeout=CONTROL_TIMEOUT_S) as http:
        tokens = TokenCache(http=http)
        try:
            await tokens.get_token(settings)
        except (httpx.HTTPError, DingTalkApiError) as exc:
            return str(exc)
    return None


def probe(
    config: Path | None = _CONFIG_OPTION,
    account: str | None = typer.Option(None, "--account", "-a", help="Account id."),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Verbose logging."),
) -> None:
    """Check that each account can obtain an access token."""
    setup_logging(debug=debug)
    failed = False
    for account_id, settings in _load_accounts(config, account):
        if not settings.enabled:
            typer.echo(f"{account_id}: disabled")
            continue
        error = anyio.run(_probe, settings)
        if error is None:
            typer.echo(f"{account_id}: ok ({settings.client_id})")
        else:
            failed = True
            typer.echo(f"{account_id}: error: {error}", err=True)
    if failed:
        raise typer.Exit(code=1)


async def _send(
    settings: DingTalkSettings,
    text: str,
    *,
    user: str | None,
    group: str | None,
    use_card: bool,
) -> tuple[bool, str | None]:
    async with httpx.AsyncClient(timeout=CONTROL_TIMEOUT_S) as http:
        client = DingTalkClient(settings, tokens=TokenCache(http=http), http=http)
        sender = ProactiveSender(client)
        result = await sender.send_proactive(
            text, user_id=user, conversation_id=group, use_card=use_card
        )
    return result.ok, result.error


def send(
    text: str = typer.Argument(..., help="Message text (markdown allowed)."),
    user: str | None = typer.Option(None, "--user", help="Recipient user id."),
    group: str | None = typer.Option(
        None, "--group", help="Recipient open conversation id."
    ),
    card: bool = typer.Option(True, "--card/--no-card", help="Try an AI card first."),
    config: Path | None = _CONFIG_OPTION,
    account: str | None = typer.Option(None, "--account", "-a", help="Account id."),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Verbose logging."),
) -> None:
    """Send a proactive message to a user or group."""
    setup_logging(debug=debug)
    if bool(user) == bool(group):
        typer.echo("error: pass exactly one of --user or --group", err=True)
        raise typer.Exit(code=1)
    accounts = _load_accounts(config, account)
    _, settings = accounts[0]
    ok, error = anyio.run(
        lambda: _send(settings, text, user=user, group=group, use_card=card)
    )
    if not ok:
        typer.echo(f"error: {error}", err=True)
        raise typer.Exit(code=1)
    typer.echo("sent")


def app_main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """DingTalk bridge for AI agent gateways."""


def create_app() -> typer.Typer:
    app = typer.Typer(
        add_completion=False,
        no_args_is_help=True,
        help="DingTalk bridge for AI agent gateways.",
    )
    app.callback()(app_main)
    app.command(name="probe")(probe)
    app.command(name="send")(send)
    return app


def main() -> None:
    app = create_app()
    app()


if __name__ == "__main__":
    main()
