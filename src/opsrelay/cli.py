"""
opsrelay CLI — opsrelay notify | ask | check-config
"""
import asyncio
import json
import sys

import click
from telegram.error import TelegramError

from opsrelay.config.settings import find_config_path, load_settings
from opsrelay.core.exceptions import RelayError
from opsrelay.core.structured_logger import configure_logging
from opsrelay.core.types import ApprovalOutcome, ApprovalResult, NotifyResult
from opsrelay.factories import create_relay, create_telegram_runtime

# Exit statuses for `ask`
EXIT_CHOSEN = 0
EXIT_DELIVERY_FAILED = 1
EXIT_NO_DECISION = 2


def _load(config_path: str | None):
    try:
        settings = load_settings(config_path)
    except (ValueError, FileNotFoundError) as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(EXIT_DELIVERY_FAILED)
    configure_logging(settings.logging)
    return settings


async def _notify(settings, text: str, priority: str) -> tuple[NotifyResult, bool]:
    relay = create_relay(settings)
    transport = relay.transport
    await transport.initialize()
    try:
        result = await relay.notify(text, priority)
        flushed = await relay.flush()
        # a flush of nothing means the text already went out (or was lost)
        delivered = result.delivered or flushed is not None
    finally:
        await relay.shutdown()
        await transport.shutdown()
    return result, delivered


async def _ask(settings, question: str, options: tuple[str, ...], timeout: float | None,
               header: str | None) -> ApprovalResult:
    runtime = create_telegram_runtime(settings)
    controller = runtime.relay.shutdown_controller

    try:
        await runtime.start()
    except Exception:
        await runtime.shutdown()
        raise

    async def shutdown_on_signal():
        await controller.wait_for_shutdown()
        await runtime.shutdown()

    controller.install_signal_handlers()
    watcher = asyncio.create_task(shutdown_on_signal())
    try:
        return await runtime.relay.request_approval(
            question, list(options), timeout_seconds=timeout, header=header
        )
    finally:
        controller.request_shutdown()
        await watcher


@click.group()
@click.version_option(package_name="opsrelay")
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="YAML or telegram.local.md config file (default: search .claude directories)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """opsrelay — chat notifications and approval prompts for automation."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.argument("text")
@click.option(
    "--priority",
    type=click.Choice(["low", "normal", "high"]),
    default="normal",
    show_default=True,
)
@click.pass_context
def notify(ctx: click.Context, text: str, priority: str) -> None:
    """Send TEXT to the configured chat."""
    settings = _load(ctx.obj["config_path"])
    try:
        result, delivered = asyncio.run(_notify(settings, text, priority))
    except (RelayError, TelegramError) as e:
        click.echo(f"Error: {getattr(e, 'message', e)}", err=True)
        sys.exit(EXIT_DELIVERY_FAILED)

    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)
    if not delivered:
        click.echo("Notification was not delivered", err=True)
        sys.exit(EXIT_DELIVERY_FAILED)
    click.echo("Notification delivered")


@cli.command()
@click.argument("question")
@click.option("-o", "--option", "options", multiple=True, required=True,
              help="Choice label (repeat for each option)")
@click.option("--timeout", type=float, default=None,
              help="Seconds to wait (default: approvals.default_timeout_seconds)")
@click.option("--header", default=None, help="Short heading shown above the question")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
@click.pass_context
def ask(ctx: click.Context, question: str, options: tuple[str, ...], timeout: float | None,
        header: str | None, as_json: bool) -> None:
    """Ask QUESTION with buttons and print the chosen option.

    Exit status: 0 when an option was chosen, 2 on timeout, cancellation or
    eviction, 1 when the request could not be delivered.
    """
    settings = _load(ctx.obj["config_path"])
    try:
        result = asyncio.run(_ask(settings, question, options, timeout, header))
    except (RelayError, TelegramError) as e:
        click.echo(f"Error: {getattr(e, 'message', e)}", err=True)
        sys.exit(EXIT_DELIVERY_FAILED)

    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)

    if as_json:
        click.echo(json.dumps(result.to_dict()))
    elif result.chosen:
        click.echo(result.value)
    else:
        click.echo(f"No decision: {result.outcome.value}", err=True)

    if result.chosen:
        sys.exit(EXIT_CHOSEN)
    if result.outcome in (ApprovalOutcome.UNDELIVERED, ApprovalOutcome.NOT_FOUND):
        sys.exit(EXIT_DELIVERY_FAILED)
    sys.exit(EXIT_NO_DECISION)


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context) -> None:
    """Load and validate the configuration, then print a summary."""
    config_path = ctx.obj["config_path"] or find_config_path()
    try:
        settings = load_settings(config_path)
    except (ValueError, FileNotFoundError) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Configuration valid ({config_path or 'environment'})")
    click.echo(f"  chat_id:           {settings.telegram.chat_id}")
    click.echo(f"  batch window:      {settings.batching.window_seconds}s")
    click.echo(f"  max queue:         {settings.batching.max_queue_size}")
    click.echo(f"  max approvals:     {settings.approvals.max_concurrent_approvals}")
    click.echo(f"  approval timeout:  {settings.approvals.default_timeout_seconds}s")
    click.echo(f"  poll mode:         {settings.approvals.poll_mode}")
    click.echo(f"  rate limit:        {settings.delivery.rate_limit_requests}"
               f"/{settings.delivery.rate_limit_window_seconds}s")


if __name__ == "__main__":
    cli()
