"""Background sweep that purges artifacts clients never cleaned up."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from .artifact_store import ArtifactStore
from .errors import GatewayError
from .storage import StorageConfig, remove_quietly

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """
    Delete artifacts older than ``max_age`` seconds.

    Transient inputs and staging outputs older than ``max_age`` are removed as
    well; those only survive when a request died mid-flight.
    """

    def __init__(self, store: ArtifactStore, storage: StorageConfig, max_age: float, interval: float):
        self.store = store
        self.storage = storage
        self.max_age = max_age
        self.interval = interval

    def _sweep_directory(self, directory: Path, cutoff: float) -> int:
        removed = 0
        for path in directory.iterdir():
            try:
                if not path.is_file() or path.stat().st_mtime >= cutoff:
                    continue
            except FileNotFoundError:
                continue
            if remove_quietly(path):
                removed += 1
        return removed

    def _sweep_unregistered(self, cutoff: float) -> int:
        """Data files in the artifact directory with no metadata record (interrupted puts)."""
        registered = set(self.store.identifiers())
        removed = 0
        for path in self.store.root.iterdir():
            if path.suffix == ".json" and not path.name.startswith("."):
                continue
            identifier = path.name.lstrip(".").split("_", 1)[0].split(".", 1)[0]
            if identifier in registered:
                continue
            try:
                if not path.is_file() or path.stat().st_mtime >= cutoff:
                    continue
            except FileNotFoundError:
                continue
            if remove_quietly(path):
                removed += 1
        return removed

    async def sweep_once(self, now: Optional[float] = None) -> int:
        now = now if now is not None else time.time()
        purged = 0
        for identifier in self.store.list_expired(self.max_age, now=now):
            try:
                await self.store.delete(identifier)
                purged += 1
            except GatewayError as e:
                # NotFound here means a client deleted it concurrently
                logger.debug(f"Skipping expired artifact {identifier}: {e.message}")

        cutoff = now - self.max_age
        orphans = self._sweep_directory(self.storage.uploads_dir, cutoff)
        orphans += self._sweep_directory(self.storage.staging_dir, cutoff)
        orphans += self._sweep_unregistered(cutoff)

        if purged or orphans:
            logger.info(f"Retention sweep purged {purged} artifacts and {orphans} orphaned files")
        return purged + orphans

    async def run(self) -> None:
        logger.info(f"Retention sweep started (max_age={self.max_age}s, interval={self.interval}s)")
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Retention sweep failed: {exc}")
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
