#!/usr/bin/env python3
"""
Snapshot Store - Durable cache of the last known order set

One JSON file per client, rewritten atomically (temp file + rename) once per
event-loop turn in which the store changed. On startup the snapshot seeds
the store so consumers get data before the first authoritative pull
completes.

Format:
{
    "schema_version": 1,
    "orders": [...],
    "partners": [...],
    "saved_at": 1234567890.123
}

A file with an unknown schema_version, or one that fails to parse, is
discarded and removed; the client then starts empty and waits for the pull.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError

import config
from core.event_bus import Subscription
from core.event_schemas import SnapshotRecord
from core.exceptions import SnapshotSchemaError
from core.logger_factory import AUDIT_LOG, log_event
from core.store import OrderStateStore, StoreChange

logger = logging.getLogger(__name__)


class SnapshotStore:
    """
    Atomic single-file persistence for OrderStateStore snapshots.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, schema_version: Optional[int] = None):
        self.path = Path(path or config.get_config("SNAPSHOT_FILE"))
        self.schema_version = schema_version or config.get_config("SNAPSHOT_SCHEMA_VERSION")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._write_count = 0
        self._subscription: Optional[Subscription] = None
        self._store: Optional[OrderStateStore] = None
        self._dirty = False
        self._flush_scheduled = False

    @property
    def write_count(self) -> int:
        return self._write_count

    def save(self, record: SnapshotRecord) -> bool:
        """
        Write a snapshot atomically.

        Returns:
            True if successful. A failed write leaves the previous file intact.
        """
        temp_path = self.path.with_suffix('.tmp')
        try:
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(record.model_dump(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save snapshot to {self.path}: {e}")
            return False

        self._write_count += 1
        logger.debug(f"Snapshot saved: {len(record.orders)} orders -> {self.path}")
        return True

    def read(self) -> Optional[SnapshotRecord]:
        """
        Read and validate the snapshot file.

        Returns:
            The record, or None if no snapshot exists

        Raises:
            SnapshotSchemaError: file corrupt or written by another schema version
        """
        if not self.path.exists():
            return None

        try:
            with open(self.path, encoding='utf-8') as f:
                raw = json.load(f)
            record = SnapshotRecord.model_validate(raw)
        except (OSError, ValueError, PydanticValidationError) as e:
            raise SnapshotSchemaError(f"Unreadable snapshot {self.path}: {e}") from e

        if record.schema_version != self.schema_version:
            raise SnapshotSchemaError(
                f"Snapshot schema_version {record.schema_version} != {self.schema_version}"
            )
        return record

    def load(self) -> Optional[SnapshotRecord]:
        """
        Load the snapshot, resetting the cache if it is unusable.

        Returns:
            The record, or None if absent or discarded
        """
        try:
            record = self.read()
        except SnapshotSchemaError as e:
            logger.warning(f"Discarding persisted snapshot: {e}")
            log_event(
                AUDIT_LOG(),
                "snapshot_reset",
                message=str(e),
                level=logging.WARNING,
                path=str(self.path),
            )
            self.clear()
            return None

        if record is not None:
            logger.info(f"Snapshot loaded: {len(record.orders)} orders from {self.path}")
        return record

    def clear(self) -> bool:
        """Delete the snapshot file."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Failed to delete snapshot {self.path}: {e}")
            return False

    def restore_into(self, store: OrderStateStore) -> int:
        """
        Seed `store` from the persisted snapshot.

        Returns:
            Number of orders seeded (0 if nothing usable was found)
        """
        record = self.load()
        if record is None:
            return 0
        return store.seed_from_snapshot(record)

    def attach(self, store: OrderStateStore) -> Subscription:
        """
        Write through after applied store mutations.

        Changes made in one loop turn are coalesced into a single write,
        scheduled with call_soon. Without a running loop every change is
        written immediately.
        """
        def _on_change(change: StoreChange) -> None:
            if change.kind == "seed":
                return
            self._dirty = True
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is None:
                self.flush()
            elif not self._flush_scheduled:
                self._flush_scheduled = True
                loop.call_soon(self.flush)

        self.detach()
        self._store = store
        self._subscription = store.add_listener(_on_change)
        return self._subscription

    def flush(self) -> bool:
        """Write the attached store now if it changed since the last write."""
        self._flush_scheduled = False
        if not self._dirty or self._store is None:
            return False
        self._dirty = False
        return self.save(self._store.to_snapshot())

    def detach(self) -> None:
        """Flush pending changes and stop writing through."""
        self.flush()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self._store = None
