"""Supported-asset whitelist held as versioned, immutable snapshots.

Readers take one snapshot and use it for the whole check; updates build a new
snapshot and swap the reference, so a reader never sees a half-applied change.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

from relayb0t.data.models import AssetConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetSnapshot:
    version: int
    assets: Mapping[str, AssetConfig]
    paused: frozenset[str] = field(default_factory=frozenset)

    def get(self, asset: str) -> AssetConfig | None:
        return self.assets.get(asset.lower())

    def is_paused(self, asset: str) -> bool:
        key = asset.lower()
        cfg = self.assets.get(key)
        return key in self.paused or (cfg is not None and cfg.paused)


class AssetRegistry:
    """Holds the current asset snapshot."""

    def __init__(self, assets: Iterable[AssetConfig] = ()) -> None:
        self._write_lock = threading.Lock()
        self._snapshot = self._build(1, assets, frozenset())

    @classmethod
    def from_file(cls, path: str | Path) -> "AssetRegistry":
        """Load assets from a JSON list of asset objects."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        assets = [AssetConfig.model_validate(item) for item in raw]
        logger.info(f"Loaded {len(assets)} supported assets from {path}")
        return cls(assets)

    @staticmethod
    def _build(
        version: int, assets: Iterable[AssetConfig], paused: frozenset[str]
    ) -> AssetSnapshot:
        by_key = {a.key: a for a in assets}
        return AssetSnapshot(
            version=version,
            assets=MappingProxyType(by_key),
            paused=frozenset(p for p in paused if p in by_key),
        )

    def snapshot(self) -> AssetSnapshot:
        return self._snapshot

    def replace(self, assets: Iterable[AssetConfig]) -> AssetSnapshot:
        """Swap in a new whitelist, keeping pause flags for assets that remain."""
        with self._write_lock:
            current = self._snapshot
            self._snapshot = self._build(current.version + 1, assets, current.paused)
            logger.info(
                "Asset whitelist replaced",
                extra={"version": self._snapshot.version, "count": len(self._snapshot.assets)},
            )
            return self._snapshot

    def set_paused(self, asset: str, paused: bool) -> AssetSnapshot:
        with self._write_lock:
            current = self._snapshot
            key = asset.lower()
            flags = set(current.paused)
            if paused:
                flags.add(key)
            else:
                flags.discard(key)
            self._snapshot = self._build(
                current.version + 1, current.assets.values(), frozenset(flags)
            )
            logger.warning(
                f"Asset {'paused' if paused else 'unpaused'}: {key}",
                extra={"version": self._snapshot.version},
            )
            return self._snapshot
