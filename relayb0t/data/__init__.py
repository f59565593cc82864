"""Data layer - ledger and price clients, asset whitelist, storage."""

from relayb0t.data.assets import AssetRegistry, AssetSnapshot
from relayb0t.data.ledger_client import Ledger, LedgerReceipt, Web3Ledger
from relayb0t.data.price_client import PriceQuoteChain
from relayb0t.data.storage import init_db

__all__ = [
    "AssetRegistry",
    "AssetSnapshot",
    "Ledger",
    "LedgerReceipt",
    "Web3Ledger",
    "PriceQuoteChain",
    "init_db",
]
