"""Startup self-checks for reliability on clean machines."""

from __future__ import annotations

import re
from pathlib import Path

from sqlalchemy import text
from web3 import Web3

from relayb0t.config import Settings
from relayb0t.data.storage import get_session, init_db


def redact_db_url(db_url: str) -> str:
    """Redact credentials in DB URL for safe printing."""
    # redact user:pass@
    return re.sub(r"://([^:/]+):([^@]+)@", r"://\1:***@", db_url)


def startup_banner(settings: Settings) -> str:
    """Create a safe startup banner (no secrets)."""
    return (
        "\n"
        "RelayB0T Startup\n"
        "============================================================\n"
        f"Mode:           {settings.mode}\n"
        f"Chain id:       {settings.chain_id}\n"
        f"Forwarder:      {settings.forwarder_address}\n"
        f"Fee collector:  {settings.fee_collector_address}\n"
        f"Workers:        {settings.dispatch_workers}\n"
        f"DB URL:         {redact_db_url(settings.db_url)}\n"
        "============================================================\n"
    )


def validate_db_connectivity(db_url: str) -> None:
    """Validate DB connectivity and schema availability."""
    init_db(db_url)
    session = get_session()
    try:
        session.execute(text("SELECT 1"))
    finally:
        session.close()


def validate_addresses(settings: Settings) -> None:
    """Validate the configured contract and collector addresses."""
    for name in ("forwarder_address", "fee_collector_address"):
        if not Web3.is_address(getattr(settings, name)):
            raise RuntimeError(f"RELAYBOT_{name.upper()} is not a valid address.")


def validate_assets_file(settings: Settings) -> None:
    if not Path(settings.assets_file).is_file():
        raise RuntimeError(
            f"Assets file not found: {settings.assets_file}. "
            "Set RELAYBOT_ASSETS_FILE to a JSON list of supported assets."
        )


def validate_relayer_key(settings: Settings) -> None:
    """Validate the relayer key in live mode.

    The relayer account pays settlement fees, so a malformed key would only
    surface on the first broadcast.
    """
    if settings.mode != "live":
        return

    if not settings.rpc_url:
        raise RuntimeError("Missing RELAYBOT_RPC_URL (required when RELAYBOT_MODE=live).")
    if not settings.relayer_private_key:
        raise RuntimeError(
            "Missing RELAYBOT_RELAYER_PRIVATE_KEY (required when RELAYBOT_MODE=live)."
        )

    try:
        from eth_account import Account

        Account.from_key(settings.relayer_private_key)
    except Exception:
        raise RuntimeError("Invalid RELAYBOT_RELAYER_PRIVATE_KEY format.")


def run_startup_checks(settings: Settings) -> None:
    validate_addresses(settings)
    validate_assets_file(settings)
    validate_relayer_key(settings)
    validate_db_connectivity(settings.db_url)
