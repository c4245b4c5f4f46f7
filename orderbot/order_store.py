"""Durable storage for orders and vendors.

Two implementations share one contract: InMemoryOrderStore for local runs and tests,
MongoOrderStore for deployments. The claim path relies on update_order_status being a
single conditional write scoped by (order_id, status == pending).
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Dict, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from .models import Order, OrderStatus, Vendor
from .utils import mask_number, utcnow

logger = logging.getLogger("orderbot.store")


class OrderStoreError(RuntimeError):
    """Raised when the backing store cannot complete a read or write."""


class InMemoryOrderStore:
    """Process-local order store; every operation runs under one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orders: Dict[str, Order] = {}
        self._vendors: Dict[str, Vendor] = {}

    def insert_order(self, order: Order) -> None:
        with self._lock:
            if order.order_id in self._orders:
                raise OrderStoreError(f"Order {order.order_id} already exists")
            self._orders[order.order_id] = order.model_copy(deep=True)
        logger.info("order saved order=%s customer=%s", order.order_id, mask_number(order.customer_id))

    def update_order_status(self, order_id: str, vendor_id: str) -> int:
        """Assign order_id to vendor_id only while it is still pending; return matched count."""
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != OrderStatus.PENDING:
                return 0
            order.status = OrderStatus.ASSIGNED.value
            order.vendor_id = vendor_id
            order.assigned_at = utcnow()
            return 1

    def find_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    def find_pending_by_suffix(self, digits: str) -> Optional[Order]:
        # Most recently created match wins; order ids break created_at ties.
        with self._lock:
            matches = [
                order
                for order in self._orders.values()
                if order.status == OrderStatus.PENDING and order.order_id.endswith(digits)
            ]
            if not matches:
                return None
            if len(matches) > 1:
                logger.warning(
                    "ambiguous order code=%s matches=%d picking most recent", digits, len(matches)
                )
            latest = max(matches, key=lambda order: (order.created_at, order.order_id))
            return latest.model_copy(deep=True)

    def upsert_vendor(self, vendor_id: str) -> None:
        with self._lock:
            if vendor_id not in self._vendors:
                self._vendors[vendor_id] = Vendor(vendor_id=vendor_id)
                logger.info("new vendor added vendor=%s", mask_number(vendor_id))

    def link_order(self, vendor_id: str, order_id: str) -> None:
        with self._lock:
            vendor = self._vendors.setdefault(vendor_id, Vendor(vendor_id=vendor_id))
            if order_id not in vendor.assigned_orders:
                vendor.assigned_orders.append(order_id)
        logger.info("linked order=%s vendor=%s", order_id, mask_number(vendor_id))

    def find_vendor(self, vendor_id: str) -> Optional[Vendor]:
        with self._lock:
            vendor = self._vendors.get(vendor_id)
            return vendor.model_copy(deep=True) if vendor else None


class MongoOrderStore:
    """MongoDB-backed order store using the `orders` and `vendors` collections."""

    def __init__(self, orders: Collection, vendors: Collection) -> None:
        """Purpose: Wrap the two collections and make sure lookup indexes exist.
        Inputs/Outputs: Inputs are pymongo collections; no return value.
        Side Effects / State: Creates unique indexes on order_id and vendor_id.
        Dependencies: Uses pymongo Collection.create_index.
        Failure Modes: PyMongoError during index creation raises OrderStoreError.
        If Removed: Orders are not persisted across restarts.
        Testing Notes: Pass MagicMock collections and assert the index calls.
        """
        # Keep collection handles and ensure the indexes the claim path depends on.
        self._orders = orders
        self._vendors = vendors
        try:
            self._orders.create_index([("order_id", ASCENDING)], unique=True)
            self._orders.create_index([("status", ASCENDING), ("created_at", DESCENDING)])
            self._vendors.create_index([("vendor_id", ASCENDING)], unique=True)
        except PyMongoError as exc:
            raise OrderStoreError("Failed to prepare MongoDB indexes") from exc

    @classmethod
    def from_uri(cls, uri: str, db_name: str) -> "MongoOrderStore":
        client = MongoClient(uri, tz_aware=True, serverSelectionTimeoutMS=5000)
        db = client[db_name]
        logger.info("mongo store db=%s", db_name)
        return cls(db["orders"], db["vendors"])

    def insert_order(self, order: Order) -> None:
        try:
            self._orders.insert_one(order.model_dump())
        except DuplicateKeyError as exc:
            raise OrderStoreError(f"Order {order.order_id} already exists") from exc
        except PyMongoError as exc:
            raise OrderStoreError(f"Failed to save order {order.order_id}") from exc
        logger.info("order saved order=%s customer=%s", order.order_id, mask_number(order.customer_id))

    def update_order_status(self, order_id: str, vendor_id: str) -> int:
        """Purpose: Atomically move a pending order to assigned.
        Inputs/Outputs: Inputs are order_id and vendor_id; returns 1 if this call won, else 0.
        Side Effects / State: Sets status, vendor_id, assigned_at on the order document.
        Dependencies: Uses find_one_and_update with a status filter, so the check and the
            write happen as one server-side operation.
        Failure Modes: PyMongoError raises OrderStoreError.
        If Removed: Racing vendors could both be assigned the same order.
        Testing Notes: Assert the filter includes status == pending.
        """
        # Only a document still pending can match; a concurrent winner makes this a no-op.
        try:
            updated = self._orders.find_one_and_update(
                {"order_id": order_id, "status": OrderStatus.PENDING.value},
                {
                    "$set": {
                        "status": OrderStatus.ASSIGNED.value,
                        "vendor_id": vendor_id,
                        "assigned_at": utcnow(),
                    }
                },
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise OrderStoreError(f"Failed to assign order {order_id}") from exc
        if updated is None:
            return 0
        logger.info("vendor assigned order=%s vendor=%s", order_id, mask_number(vendor_id))
        return 1

    def find_order(self, order_id: str) -> Optional[Order]:
        try:
            doc = self._orders.find_one({"order_id": order_id})
        except PyMongoError as exc:
            raise OrderStoreError(f"Failed to load order {order_id}") from exc
        return Order.model_validate(doc) if doc else None

    def find_pending_by_suffix(self, digits: str) -> Optional[Order]:
        query = {"status": OrderStatus.PENDING.value, "order_id": {"$regex": f"{re.escape(digits)}$"}}
        try:
            docs = list(
                self._orders.find(query).sort([("created_at", DESCENDING), ("order_id", DESCENDING)]).limit(2)
            )
        except PyMongoError as exc:
            raise OrderStoreError(f"Failed to search orders for code {digits}") from exc
        if not docs:
            return None
        if len(docs) > 1:
            logger.warning("ambiguous order code=%s picking most recent order=%s", digits, docs[0]["order_id"])
        return Order.model_validate(docs[0])

    def upsert_vendor(self, vendor_id: str) -> None:
        vendor = Vendor(vendor_id=vendor_id)
        try:
            result = self._vendors.update_one(
                {"vendor_id": vendor_id},
                {"$setOnInsert": {"assigned_orders": [], "created_at": vendor.created_at}},
                upsert=True,
            )
        except PyMongoError as exc:
            raise OrderStoreError(f"Failed to save vendor {mask_number(vendor_id)}") from exc
        if result.upserted_id is not None:
            logger.info("new vendor added vendor=%s", mask_number(vendor_id))

    def link_order(self, vendor_id: str, order_id: str) -> None:
        try:
            self._vendors.update_one({"vendor_id": vendor_id}, {"$addToSet": {"assigned_orders": order_id}})
        except PyMongoError as exc:
            raise OrderStoreError(f"Failed to link order {order_id}") from exc
        logger.info("linked order=%s vendor=%s", order_id, mask_number(vendor_id))

    def find_vendor(self, vendor_id: str) -> Optional[Vendor]:
        try:
            doc = self._vendors.find_one({"vendor_id": vendor_id})
        except PyMongoError as exc:
            raise OrderStoreError(f"Failed to load vendor {mask_number(vendor_id)}") from exc
        return Vendor.model_validate(doc) if doc else None
