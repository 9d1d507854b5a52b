"""
Two-tier TTL cache for order collections.

Tier 1 is an in-process dict (default TTL 30 min). Tier 2 is a JSON snapshot
per key under ORDERS_CACHE_DIR (valid 24 h), replaced atomically on every
write. A snapshot hit is promoted back into memory. Expiry is evaluated
lazily on read; ``cleanup`` removes expired entries eagerly.

Single logical writer: concurrent writers to the same key are last-wins,
except that an order already marked sent in memory stays sent.
"""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import config
from services.order_models import CachedOrderCollection, Order, iso_utc, parse_iso_datetime, utcnow
from services.order_store import keep_sent_state

LOGGER = logging.getLogger(__name__)

ORDERS_KEY = "orders"
SNAPSHOT_SUFFIX = "_snapshot.json"


@dataclass
class _Entry:
    data: CachedOrderCollection
    stored_at: datetime
    expires_at: datetime


def dedupe_collection(collection: CachedOrderCollection) -> CachedOrderCollection:
    """Drop repeated order ids, last occurrence wins. Idempotent."""
    by_id: Dict[str, Order] = {}
    duplicates: List[str] = []
    for order in collection.orders:
        if order.id in by_id:
            duplicates.append(order.id)
        by_id[order.id] = order
    if not duplicates:
        return collection
    LOGGER.warning(f"[OrderCache] Dropped {len(duplicates)} duplicate orders on write: {sorted(set(duplicates))}")
    orders = list(by_id.values())
    total = max(collection.total_count - len(duplicates), len(orders))
    return collection.model_copy(update={"orders": orders, "total_count": total})


def keep_sent_orders(previous: CachedOrderCollection, collection: CachedOrderCollection) -> CachedOrderCollection:
    """Orders already marked sent in ``previous`` stay sent in ``collection``."""
    sent = {order.id: order for order in previous.orders if order.review_request_sent}
    if not sent:
        return collection
    orders = [keep_sent_state(sent.get(order.id), order) for order in collection.orders]
    return collection.model_copy(update={"orders": orders})


class OrderCache:
    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        *,
        ttl: timedelta = timedelta(minutes=config.ORDERS_CACHE_TTL_MINUTES),
        snapshot_ttl: timedelta = timedelta(hours=config.ORDERS_SNAPSHOT_TTL_HOURS),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache_dir = Path(cache_dir or config.ORDERS_CACHE_DIR)
        self.ttl = ttl
        self.snapshot_ttl = snapshot_ttl
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._write_lock = asyncio.Lock()
        self._counters = {"memoryHits": 0, "snapshotHits": 0, "misses": 0, "writes": 0, "writeErrors": 0}

    def snapshot_path(self, key: str = ORDERS_KEY) -> Path:
        return self.cache_dir / f"{key}{SNAPSHOT_SUFFIX}"

    # ----------------------------
    # Read
    # ----------------------------
    async def get(self, key: str = ORDERS_KEY) -> Optional[CachedOrderCollection]:
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None:
            if now <= entry.expires_at:
                self._counters["memoryHits"] += 1
                return entry.data
            del self._entries[key]

        snapshot = await asyncio.to_thread(self._read_snapshot, key)
        if snapshot is None:
            self._counters["misses"] += 1
            return None
        data, expires_at = snapshot
        if now > expires_at:
            LOGGER.info(f"[OrderCache] Snapshot for {key} expired at {iso_utc(expires_at)}")
            self._counters["misses"] += 1
            return None
        self._entries[key] = _Entry(data=data, stored_at=now, expires_at=min(now + self.ttl, expires_at))
        self._counters["snapshotHits"] += 1
        LOGGER.info(f"[OrderCache] Promoted snapshot for {key} ({len(data.orders)} orders)")
        return data

    def _read_snapshot(self, key: str):
        path = self.snapshot_path(key)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            expires_at = parse_iso_datetime(raw.get("expiresAt"))
            if expires_at is None:
                raise ValueError("snapshot has no expiresAt")
            return CachedOrderCollection.model_validate(raw.get("data") or {}), expires_at
        except (OSError, ValueError, AttributeError) as exc:
            LOGGER.warning(f"[OrderCache] Unreadable snapshot {path}: {exc}")
            return None

    # ----------------------------
    # Write
    # ----------------------------
    async def set(self, collection: CachedOrderCollection, key: str = ORDERS_KEY) -> CachedOrderCollection:
        collection = dedupe_collection(collection)
        previous = self._entries.get(key)
        if previous is not None:
            collection = keep_sent_orders(previous.data, collection)
        now = self._clock()
        self._entries[key] = _Entry(data=collection, stored_at=now, expires_at=now + self.ttl)
        self._counters["writes"] += 1
        async with self._write_lock:
            await asyncio.to_thread(self._write_snapshot, key, collection, now)
        return collection

    def _write_snapshot(self, key: str, collection: CachedOrderCollection, now: datetime) -> None:
        path = self.snapshot_path(key)
        document = {
            "key": key,
            "storedAt": iso_utc(now),
            "expiresAt": iso_utc(now + self.snapshot_ttl),
            "data": collection.to_payload(),
        }
        tmp_name = None
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.cache_dir, prefix=f".{key}.", suffix=".tmp", delete=False
            ) as handle:
                tmp_name = handle.name
                json.dump(document, handle, ensure_ascii=False)
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            self._counters["writeErrors"] += 1
            LOGGER.error(f"[OrderCache] Failed to write snapshot {path}: {exc}")
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    async def update_order(self, order: Order, key: str = ORDERS_KEY) -> bool:
        """Replace one order inside the cached collection. Returns False when nothing is cached for it."""
        return await self.update_orders([order], key) > 0

    async def update_orders(self, orders: List[Order], key: str = ORDERS_KEY) -> int:
        current = await self.get(key)
        if current is None:
            return 0
        replacements = {order.id: order for order in orders}
        replaced = 0
        merged = []
        for existing in current.orders:
            if existing.id in replacements:
                merged.append(replacements[existing.id])
                replaced += 1
            else:
                merged.append(existing)
        if replaced:
            await self.set(current.model_copy(update={"orders": merged, "last_updated": iso_utc(self._clock())}), key)
        return replaced

    async def invalidate(self, key: Optional[str] = None) -> None:
        keys = [key] if key else list({*self._entries, *self._snapshot_keys()})
        for name in keys:
            self._entries.pop(name, None)
            await asyncio.to_thread(self._remove_snapshot, name)
        LOGGER.info(f"[OrderCache] Invalidated {', '.join(keys) if keys else 'nothing'}")

    def _remove_snapshot(self, key: str) -> None:
        try:
            self.snapshot_path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            LOGGER.warning(f"[OrderCache] Failed to remove snapshot for {key}: {exc}")

    def _snapshot_keys(self) -> List[str]:
        if not self.cache_dir.exists():
            return []
        return [p.name[: -len(SNAPSHOT_SUFFIX)] for p in self.cache_dir.glob(f"*{SNAPSHOT_SUFFIX}")]

    # ----------------------------
    # Maintenance
    # ----------------------------
    async def cleanup(self) -> int:
        """Drop expired memory entries and expired snapshot files. Returns the number removed."""
        now = self._clock()
        removed = 0
        for key in [k for k, entry in self._entries.items() if now > entry.expires_at]:
            del self._entries[key]
            removed += 1
        for key in await asyncio.to_thread(self._snapshot_keys):
            snapshot = await asyncio.to_thread(self._read_snapshot, key)
            if snapshot is None or now > snapshot[1]:
                await asyncio.to_thread(self._remove_snapshot, key)
                removed += 1
        if removed:
            LOGGER.info(f"[OrderCache] Cleanup removed {removed} expired entries")
        return removed

    async def cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.cleanup()
            except Exception as exc:
                LOGGER.error(f"[OrderCache] Periodic cleanup failed: {exc}", exc_info=True)

    async def flush(self) -> None:
        """Persist every live memory entry to its snapshot."""
        now = self._clock()
        async with self._write_lock:
            for key, entry in list(self._entries.items()):
                if now <= entry.expires_at:
                    await asyncio.to_thread(self._write_snapshot, key, entry.data, entry.stored_at)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        active = sum(1 for entry in self._entries.values() if now <= entry.expires_at)
        return {
            "total": len(self._entries),
            "active": active,
            "expired": len(self._entries) - active,
            "snapshots": len(self._snapshot_keys()),
            **self._counters,
        }
