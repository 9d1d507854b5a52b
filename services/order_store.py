"""
Durable order store (SQLite).

One row per order in the ``orders`` table with the full order as JSON;
collection metadata (lastUpdated, totalCount, dataFetchedAt, validUntil,
nextToken) lives in ``app_kv_store`` under ``orders.*`` keys.

Merging is a pure function (``merge_orders``) so the review-state rules can
be tested without a database.
"""

import calendar
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from services import db as db_service
from services.order_models import (
    TERMINAL_REASON_CODES,
    CachedOrderCollection,
    Order,
    iso_utc,
    parse_iso_datetime,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

FULL_FETCH_VALIDITY = timedelta(hours=24)
META_LAST_UPDATED = "orders.last_updated"
META_TOTAL_COUNT = "orders.total_count"
META_DATA_FETCHED_AT = "orders.data_fetched_at"
META_VALID_UNTIL = "orders.valid_until"
META_NEXT_TOKEN = "orders.next_token"
_META_KEYS = (META_LAST_UPDATED, META_TOTAL_COUNT, META_DATA_FETCHED_AT, META_VALID_UNTIL, META_NEXT_TOKEN)

# Review-state fields owned by local tracking; existing values win on merge.
REVIEW_STATE_FIELDS = (
    "solicitation_eligible",
    "solicitation_reason",
    "solicitation_reason_code",
    "review_request_sent_at",
)
SOLICITATION_CHECK_FIELDS = ("solicitation_eligible", "solicitation_reason", "solicitation_reason_code")
UNSET_REVIEW_STATUSES = (None, "pending")
# Written by a successful dispatch; never cleared by a later write.
SENT_STATE_FIELDS = (
    "review_request_sent",
    "review_request_sent_at",
    "review_request_status",
    "solicitation_eligible",
    "solicitation_reason",
    "solicitation_reason_code",
)


@dataclass
class MergeResult:
    merged: List[Order] = field(default_factory=list)
    added: int = 0
    updated: int = 0

    @property
    def total_count(self) -> int:
        return len(self.merged)


def needs_solicitation_recheck(order: Order) -> bool:
    """Never checked, or last check ended with a non-terminal reason."""
    if order.solicitation_eligible is None:
        return True
    return order.solicitation_reason_code not in TERMINAL_REASON_CODES


def merge_order(existing: Order, incoming: Order) -> Order:
    update: Dict[str, Any] = {}
    # The eligibility flag, reason and code move together; an unchecked
    # existing order adopts all three from a checked incoming one.
    adopt_check = existing.solicitation_eligible is None and incoming.solicitation_eligible is not None
    for name in REVIEW_STATE_FIELDS:
        if adopt_check and name in SOLICITATION_CHECK_FIELDS:
            continue
        current = getattr(existing, name)
        if current is not None:
            update[name] = current

    update["review_request_sent"] = bool(existing.review_request_sent or incoming.review_request_sent)
    # A degraded "error" status gives way to any completed enrichment.
    recovered = (
        existing.review_request_status == "error" and incoming.review_request_status not in UNSET_REVIEW_STATUSES
    )
    if existing.review_request_status not in UNSET_REVIEW_STATUSES and not recovered:
        update["review_request_status"] = existing.review_request_status

    if existing.has_resolved_items() and not incoming.has_resolved_items():
        update["items"] = existing.items

    return incoming.model_copy(update=update)


def merge_orders(existing: Iterable[Order], incoming: Iterable[Order]) -> MergeResult:
    """
    Merge ``incoming`` into ``existing`` keyed by order id.

    Existing orders keep their position; new ids are appended in arrival
    order. A repeated id inside ``incoming`` is merged again (last wins)
    and counted once.
    """
    by_id: Dict[str, Order] = {}
    for order in existing:
        by_id[order.id] = order
    original_ids = set(by_id)

    added_ids = set()
    updated_ids = set()
    for order in incoming:
        current = by_id.get(order.id)
        if current is None:
            by_id[order.id] = order
            added_ids.add(order.id)
            continue
        by_id[order.id] = merge_order(current, order)
        if order.id in original_ids:
            updated_ids.add(order.id)

    return MergeResult(merged=list(by_id.values()), added=len(added_ids), updated=len(updated_ids))


def one_month_before(now: datetime) -> datetime:
    year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def keep_sent_state(stored: Optional[Order], incoming: Order) -> Order:
    """
    Carry the sent state of ``stored`` onto ``incoming``.

    Write-backs of snapshots taken before a long fetch must not clear a
    review request sent in the meantime.
    """
    if stored is None or not stored.review_request_sent or incoming.review_request_sent:
        return incoming
    LOGGER.info(f"[OrderStore] Order {incoming.id} was marked sent during the write; keeping the sent state")
    return incoming.model_copy(update={name: getattr(stored, name) for name in SENT_STATE_FIELDS})


def _stored_sent_orders(conn, order_ids: Optional[List[str]] = None) -> Dict[str, Order]:
    if order_ids is None:
        rows = conn.execute("SELECT order_id, payload FROM orders").fetchall()
    else:
        rows = []
        for order_id in order_ids:
            rows.extend(
                conn.execute("SELECT order_id, payload FROM orders WHERE order_id = ?", (order_id,)).fetchall()
            )
    sent: Dict[str, Order] = {}
    for row in rows:
        try:
            order = Order.model_validate(json.loads(row["payload"]))
        except ValueError as exc:
            LOGGER.warning(f"[OrderStore] Unreadable stored order {row['order_id']} ignored for sent state: {exc}")
            continue
        if order.review_request_sent:
            sent[order.id] = order
    return sent


def _dedupe(orders: Iterable[Order]) -> List[Order]:
    by_id: Dict[str, Order] = {}
    for order in orders:
        if order.id in by_id:
            LOGGER.warning(f"[OrderStore] Duplicate order id {order.id} in write; keeping the last one")
        by_id[order.id] = order
    return list(by_id.values())


class OrderStore:
    def __init__(self, db_path: Optional[Path] = None, *, clock: Callable[[], datetime] = utcnow):
        self.db_path = db_path
        self._clock = clock
        self._schema_ready = False

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        db_service.ensure_orders_schema(self.db_path)
        self._schema_ready = True

    # ----------------------------
    # Reads
    # ----------------------------
    def load_orders(self) -> List[Order]:
        self.ensure_schema()
        with db_service.get_db_connection(self.db_path) as conn:
            rows = conn.execute("SELECT order_id, payload FROM orders ORDER BY seq").fetchall()
        orders: List[Order] = []
        for row in rows:
            try:
                orders.append(Order.model_validate(json.loads(row["payload"])))
            except ValueError as exc:
                LOGGER.warning(f"[OrderStore] Skipping unreadable order row {row['order_id']}: {exc}")
        return orders

    def get_order(self, order_id: str) -> Optional[Order]:
        self.ensure_schema()
        with db_service.get_db_connection(self.db_path) as conn:
            row = conn.execute("SELECT payload FROM orders WHERE order_id = ?", (order_id,)).fetchone()
        if row is None:
            return None
        return Order.model_validate(json.loads(row["payload"]))

    def get_orders(self, order_ids: Iterable[str]) -> List[Order]:
        """Stored orders for ``order_ids`` in the given order; unknown ids are skipped."""
        orders = []
        for order_id in order_ids:
            order = self.get_order(order_id)
            if order is not None:
                orders.append(order)
        return orders

    def load_metadata(self) -> Dict[str, Optional[str]]:
        self.ensure_schema()
        with db_service.get_db_connection(self.db_path) as conn:
            return {key: db_service.get_app_kv(conn, key) for key in _META_KEYS}

    def load_collection(self) -> CachedOrderCollection:
        orders = self.load_orders()
        meta = self.load_metadata()
        total = meta.get(META_TOTAL_COUNT)
        return CachedOrderCollection(
            orders=orders,
            last_updated=meta.get(META_LAST_UPDATED) or "",
            total_count=int(total) if total else len(orders),
            next_token=meta.get(META_NEXT_TOKEN),
            data_fetched_at=meta.get(META_DATA_FETCHED_AT),
            valid_until=meta.get(META_VALID_UNTIL),
        )

    def is_data_valid(self) -> bool:
        valid_until = parse_iso_datetime(self.load_metadata().get(META_VALID_UNTIL))
        if valid_until is None:
            return False
        return self._clock() < valid_until

    def orders_needing_solicitation_check(self) -> List[Order]:
        return [order for order in self.load_orders() if needs_solicitation_recheck(order)]

    def get_stats(self) -> Dict[str, Any]:
        orders = self.load_orders()
        meta = self.load_metadata()
        return {
            "totalOrders": len(orders),
            "lastUpdated": meta.get(META_LAST_UPDATED),
            "needsCheck": sum(1 for order in orders if needs_solicitation_recheck(order)),
            "dataFetchedAt": meta.get(META_DATA_FETCHED_AT),
            "isValid": self.is_data_valid(),
        }

    # ----------------------------
    # Writes
    # ----------------------------
    def save_orders(
        self,
        orders: Iterable[Order],
        *,
        total_count: Optional[int] = None,
        next_token: Optional[str] = None,
        full_fetch: bool = False,
    ) -> List[Order]:
        """
        Replace the stored collection with ``orders`` (deduplicated by id).
        A full fetch stamps dataFetchedAt and a 24h validUntil.
        """
        self.ensure_schema()
        orders = _dedupe(orders)
        now = self._clock()
        now_iso = iso_utc(now)
        with db_service.write_transaction(self.db_path) as conn:
            sent = _stored_sent_orders(conn)
            orders = [keep_sent_state(sent.get(order.id), order) for order in orders]
            rows = [
                (order.id, seq, order.purchase_date, json.dumps(order.to_payload(), ensure_ascii=False), now_iso)
                for seq, order in enumerate(orders)
            ]
            conn.execute("DELETE FROM orders")
            conn.executemany(
                "INSERT INTO orders (order_id, seq, purchase_date, payload, updated_at) VALUES (?, ?, ?, ?, ?)",
                rows,
            )
            db_service.set_app_kv(conn, META_LAST_UPDATED, now_iso)
            db_service.set_app_kv(conn, META_TOTAL_COUNT, str(total_count if total_count is not None else len(orders)))
            if next_token:
                db_service.set_app_kv(conn, META_NEXT_TOKEN, next_token)
            else:
                db_service.delete_app_kv(conn, META_NEXT_TOKEN)
            if full_fetch:
                db_service.set_app_kv(conn, META_DATA_FETCHED_AT, now_iso)
                db_service.set_app_kv(conn, META_VALID_UNTIL, iso_utc(now + FULL_FETCH_VALIDITY))
        LOGGER.info(f"[OrderStore] Saved {len(orders)} orders{' (full fetch)' if full_fetch else ''}")
        return orders

    def merge_with_new(
        self,
        incoming: Iterable[Order],
        *,
        next_token: Optional[str] = None,
        full_fetch: bool = False,
    ) -> MergeResult:
        result = merge_orders(self.load_orders(), incoming)
        self.save_orders(result.merged, next_token=next_token, full_fetch=full_fetch)
        LOGGER.info(
            f"[OrderStore] Merged orders: added={result.added} updated={result.updated} total={result.total_count}"
        )
        return result

    def update_order(self, order_id: str, updates: Mapping[str, Any]) -> Optional[Order]:
        """
        Apply field updates (model field names) to one stored order.
        Returns the updated order, or None when the id is unknown.
        """
        unknown = [key for key in updates if key not in Order.model_fields]
        if unknown:
            raise ValueError(f"Unknown order fields: {', '.join(sorted(unknown))}")
        current = self.get_order(order_id)
        if current is None:
            LOGGER.warning(f"[OrderStore] Order {order_id} not found for update")
            return None
        updated = Order.model_validate(current.model_copy(update=dict(updates)).model_dump())
        self.put_order(updated)
        return updated

    def put_order(self, order: Order) -> None:
        """Upsert a single order, keeping its position when it already exists."""
        self.upsert_orders([order])

    def upsert_orders(self, orders: Iterable[Order]) -> int:
        """
        Write orders as given (no review-state merge), keeping the position
        of ids already stored and appending new ones. A stored order that is
        already marked sent stays sent.
        """
        self.ensure_schema()
        orders = _dedupe(orders)
        if not orders:
            return 0
        now_iso = iso_utc(self._clock())
        with db_service.write_transaction(self.db_path) as conn:
            next_seq = conn.execute("SELECT COALESCE(MAX(seq), -1) + 1 FROM orders").fetchone()[0]
            sent = _stored_sent_orders(conn, [order.id for order in orders])
            for offset, order in enumerate(orders):
                order = keep_sent_state(sent.get(order.id), order)
                conn.execute(
                    """
                    INSERT INTO orders (order_id, seq, purchase_date, payload, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(order_id) DO UPDATE SET
                        purchase_date = excluded.purchase_date,
                        payload = excluded.payload,
                        updated_at = excluded.updated_at
                    """,
                    (
                        order.id,
                        next_seq + offset,
                        order.purchase_date,
                        json.dumps(order.to_payload(), ensure_ascii=False),
                        now_iso,
                    ),
                )
            total = conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0]
            db_service.set_app_kv(conn, META_LAST_UPDATED, now_iso)
            db_service.set_app_kv(conn, META_TOTAL_COUNT, str(total))
        return len(orders)

    def prune_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Delete orders purchased more than one calendar month before ``now``.
        Orders without a parseable purchase date are kept.
        """
        cutoff = one_month_before(now or self._clock())
        orders = self.load_orders()
        kept = []
        for order in orders:
            purchased = order.purchased_at()
            if purchased is not None and purchased < cutoff:
                continue
            kept.append(order)
        removed = len(orders) - len(kept)
        if removed:
            self.save_orders(kept)
            LOGGER.info(f"[OrderStore] Pruned {removed} orders older than {iso_utc(cutoff)}")
        return {"removedCount": removed, "remainingCount": len(kept)}

    def clear(self) -> None:
        self.ensure_schema()
        with db_service.write_transaction(self.db_path) as conn:
            conn.execute("DELETE FROM orders")
            for key in _META_KEYS:
                db_service.delete_app_kv(conn, key)
        LOGGER.info("[OrderStore] Cleared stored orders")
