from __future__ import annotations

import logging
from typing import Iterable, Optional

from . import replies
from .models import AssignmentResult, Order, OrderStatus
from .utils import mask_number

logger = logging.getLogger("orderbot.broker")


class AssignmentBroker:
    """Fans new orders out to vendors and settles first-to-claim acceptance."""

    def __init__(self, store, gateway, vendor_ids: Iterable[str]) -> None:
        """Purpose: Wire the broker to its store, gateway, and vendor pool.
        Inputs/Outputs: Inputs are an order store, a messaging gateway, and vendor ids.
        Side Effects / State: Keeps a sorted tuple of vendors so broadcasts are stable.
        Dependencies: Store must provide update_order_status as a conditional write.
        Failure Modes: None at init.
        If Removed: Placed orders never reach a vendor.
        Testing Notes: Use InMemoryOrderStore and a recording gateway.
        """
        # Store collaborators and a deterministic vendor order.
        self._store = store
        self._gateway = gateway
        self._vendors = tuple(sorted(vendor_ids))

    @property
    def vendors(self) -> tuple:
        return self._vendors

    def publish(self, order: Order) -> None:
        """Purpose: Announce a persisted PENDING order to every vendor.
        Inputs/Outputs: Input is the Order; no return value.
        Side Effects / State: One outbound send per vendor; the order record is not touched.
        Dependencies: Uses replies.vendor_order_card and the gateway.
        Failure Modes: Send failures are logged by the gateway and do not stop the fan-out.
        If Removed: Vendors never learn about new orders.
        Testing Notes: Verify each vendor receives a card containing "ACCEPT <order_id>".
        """
        # Broadcast the same card to each vendor in the pool.
        if order.status != OrderStatus.PENDING:
            logger.warning("publish skipped order=%s status=%s", order.order_id, order.status)
            return
        if not self._vendors:
            logger.warning("publish order=%s has no vendors to notify", order.order_id)
            return
        card = replies.vendor_order_card(order)
        for vendor_id in self._vendors:
            self._gateway.send(vendor_id, card)
        logger.info("order published order=%s vendors=%d", order.order_id, len(self._vendors))

    def claim(self, vendor_id: str, code: str) -> AssignmentResult:
        """Purpose: Let a vendor take a pending order by full id or trailing digits.
        Inputs/Outputs: Inputs are vendor id and order code; output is AssignmentResult.
        Side Effects / State: On ACCEPTED, assigns the order, notifies vendor and customer,
            then upserts and links the vendor. Otherwise only the vendor is notified.
        Dependencies: Relies on store.update_order_status being an atomic compare-and-set.
        Failure Modes: OrderStoreError propagates so the delivery can be retried.
        If Removed: Vendors cannot accept orders.
        Testing Notes: Race several threads on one order; exactly one gets ACCEPTED.
        """
        # Resolve the code, then let the conditional write pick the single winner.
        code = code.strip().upper()
        order = self._resolve(code)
        if order is None:
            logger.info("claim not found vendor=%s code=%s", mask_number(vendor_id), code)
            self._gateway.send(vendor_id, replies.order_not_found(code))
            return AssignmentResult.NOT_FOUND

        if order.status == OrderStatus.PENDING:
            matched = self._store.update_order_status(order.order_id, vendor_id)
            if matched:
                logger.info("claim accepted order=%s vendor=%s", order.order_id, mask_number(vendor_id))
                # Notify before linking; a replay after a link failure takes the owner branch.
                self._gateway.send(vendor_id, replies.vendor_accepted(order.order_id))
                self._gateway.send(
                    order.customer_id, replies.customer_order_handled(order.order_id, vendor_id)
                )
                self._link_vendor(vendor_id, order.order_id)
                return AssignmentResult.ACCEPTED
            order = self._store.find_order(order.order_id) or order

        if order.vendor_id == vendor_id:
            # Replayed accept from the owner: repair the link in case the first attempt died midway.
            self._link_vendor(vendor_id, order.order_id)
            self._gateway.send(vendor_id, replies.vendor_already_holds(order.order_id))
        else:
            self._gateway.send(vendor_id, replies.ORDER_ALREADY_ASSIGNED)
        logger.info("claim rejected order=%s vendor=%s reason=already_assigned", order.order_id, mask_number(vendor_id))
        return AssignmentResult.ALREADY_ASSIGNED

    def _resolve(self, code: str) -> Optional[Order]:
        order = self._store.find_order(code)
        if order is not None:
            return order
        if code.isdigit():
            return self._store.find_pending_by_suffix(code)
        return None

    def _link_vendor(self, vendor_id: str, order_id: str) -> None:
        self._store.upsert_vendor(vendor_id)
        self._store.link_order(vendor_id, order_id)
