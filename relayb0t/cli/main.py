"""CLI interface for RelayB0T."""

import asyncio
import json
import logging
import sys
import time

import click
import uvicorn
from eth_account import Account

from relayb0t.config import get_settings, load_env_or_exit
from relayb0t.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """RelayB0T - Gasless transfer relay.

    Accepts signed transfer intents and settles them, paying the fee in the
    native unit and deducting its equivalent from the transferred asset.
    """
    # Allow `relayb0t --help` to run on a clean machine even before `.env` exists
    if any(arg in ("-h", "--help") for arg in sys.argv[1:]):
        return

    # Load .env and fail fast if missing/incomplete (no silent defaults)
    load_env_or_exit()


@cli.command()
@click.option("--host", default=None, help="API host (overrides RELAYBOT_API_HOST)")
@click.option("--port", default=None, type=int, help="API port (overrides RELAYBOT_API_PORT)")
def serve(host: str | None, port: int | None) -> None:
    """Run the relay: API server plus dispatch workers."""
    setup_logging()
    settings = get_settings()

    from relayb0t.services.startup_checks import run_startup_checks, startup_banner

    click.echo(startup_banner(settings))
    try:
        run_startup_checks(settings)
    except Exception as e:
        click.echo(f"ERROR: Startup checks failed: {e}")
        raise SystemExit(2)

    if settings.mode == "live":
        click.echo("LIVE MODE - the relayer account pays real settlement fees")
    else:
        click.echo("\nPaper mode - settlement is simulated\n")

    api_host = host or settings.api_host
    api_port = port or settings.api_port

    click.echo(f"Starting API server on {api_host}:{api_port}")
    click.echo("Endpoints:")
    click.echo(f"  http://{api_host}:{api_port}/intents")
    click.echo(f"  http://{api_host}:{api_port}/fees/estimate")
    click.echo(f"  http://{api_host}:{api_port}/assets")
    click.echo(f"  http://{api_host}:{api_port}/health\n")

    uvicorn.run(
        "relayb0t.api.app:app",
        host=api_host,
        port=api_port,
        log_level=settings.log_level.lower(),
    )


@cli.command()
@click.option("--json-output", is_flag=True, help="Output as JSON")
def assets(json_output: bool) -> None:
    """List supported assets."""
    from relayb0t.data.assets import AssetRegistry

    settings = get_settings()
    snapshot = AssetRegistry.from_file(settings.assets_file).snapshot()

    if json_output:
        payload = [a.model_dump(mode="json") for a in snapshot.assets.values()]
        click.echo(json.dumps(payload, indent=2))
        return

    click.echo(f"\nSUPPORTED ASSETS (version {snapshot.version})\n" + "=" * 60)
    for asset in snapshot.assets.values():
        flag = "  [PAUSED]" if snapshot.is_paused(asset.key) else ""
        click.echo(f"{asset.symbol:<8} {asset.address}  decimals={asset.decimals}{flag}")


@cli.command()
@click.argument("intent_id")
def status(intent_id: str) -> None:
    """Show the stored record of an intent."""
    from relayb0t.data.storage import get_session, init_db
    from relayb0t.execution.intents import IntentManager

    settings = get_settings()
    init_db(settings.db_url)
    session = get_session()
    try:
        record = IntentManager(session).get(intent_id)
    finally:
        session.close()

    if record is None:
        click.echo(f"ERROR: intent {intent_id} not found")
        raise SystemExit(1)
    click.echo(json.dumps(record.to_dict(), indent=2))


@cli.command()
@click.option("--asset", required=True, help="Asset address")
@click.option("--amount", required=True, type=int, help="Amount in base units")
def estimate(asset: str, amount: int) -> None:
    """Estimate the fee for a transfer right now."""
    setup_logging()
    from relayb0t.data.models import FeeEstimateRequest
    from relayb0t.data.storage import get_session, init_db
    from relayb0t.errors import RelayError
    from relayb0t.execution.intents import IntentManager
    from relayb0t.services.relay_engine import RelayEngine

    settings = get_settings()
    init_db(settings.db_url)
    session = get_session()

    async def run_estimate() -> None:
        engine = RelayEngine.build(settings, IntentManager(session))
        try:
            result = await engine.estimate_fee(FeeEstimateRequest(asset=asset, amount=amount))
            click.echo(json.dumps(result.model_dump(by_alias=True), indent=2))
        finally:
            await engine.close()

    try:
        asyncio.run(run_estimate())
    except RelayError as e:
        click.echo(f"ERROR: {e.code}: {e}")
        raise SystemExit(1)
    finally:
        session.close()


@cli.command()
@click.option(
    "--key",
    envvar="RELAYBOT_SIGNER_KEY",
    prompt=True,
    hide_input=True,
    help="Sender private key (development only)",
)
@click.option("--asset", required=True, help="Asset address")
@click.option("--to", "recipient", required=True, help="Recipient address")
@click.option("--amount", required=True, type=int, help="Amount in base units")
@click.option("--max-fee", required=True, type=int, help="Maximum fee in base units")
@click.option("--nonce", required=True, type=int, help="Sender nonce for this asset")
@click.option("--ttl", default=3600, type=int, help="Seconds until the deadline")
@click.option("--priority", default=0, type=int, help="Dispatch priority")
def sign(
    key: str,
    asset: str,
    recipient: str,
    amount: int,
    max_fee: int,
    nonce: int,
    ttl: int,
    priority: int,
) -> None:
    """Sign a transfer intent and print the POST /intents payload."""
    from relayb0t.execution.intents import TransferIntent
    from relayb0t.execution.signing import SigningDomain, sign_intent

    settings = get_settings()
    sender = Account.from_key(key).address
    intent = TransferIntent(
        asset=asset.lower(),
        sender=sender.lower(),
        recipient=recipient.lower(),
        amount=amount,
        max_fee=max_fee,
        nonce=nonce,
        deadline=int(time.time()) + ttl,
    )
    signed = sign_intent(intent, key, SigningDomain.from_settings(settings))
    click.echo(json.dumps({**signed.to_dict(), "priority": priority}, indent=2))


if __name__ == "__main__":
    cli()
