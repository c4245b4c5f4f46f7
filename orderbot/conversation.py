"""Per-user ordering dialog.

Step contracts (one transition at most per inbound message):
    CATALOG:     any text -> send menu, go to ORDERING (text is not parsed as an item).
    ORDERING:    "<item> x <qty>" adds a priced line; "done" with items -> GET_NAME.
    GET_NAME:    store name -> GET_ADDRESS.
    GET_ADDRESS: store address -> GET_PAYMENT.
    GET_PAYMENT: store payment label -> CONFIRM, send the order summary.
    CONFIRM:     "place order" persists a PENDING order, publishes it to vendors, and
                 ends the session; anything else re-sends the confirmation prompt.

"cancel" ends an active session from any step.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from . import replies
from .broker import AssignmentBroker
from .catalog import Catalog, ParseError, parse_line_item
from .models import Order
from .session_store import Session, SessionStep, SessionStore
from .utils import mask_number, normalize_command

logger = logging.getLogger("orderbot.conversation")

DONE_COMMAND = "done"
PLACE_ORDER_COMMAND = "place order"
CANCEL_COMMAND = "cancel"


class OrderIdAllocator:
    """Issues ORD-<epoch ms> ids that strictly increase within the process."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last = 0

    def next_id(self) -> str:
        with self._lock:
            stamp = max(int(self._clock() * 1000), self._last + 1)
            self._last = stamp
        return f"ORD-{stamp}"


@dataclass
class TurnResult:
    """Replies produced for one inbound message, in send order."""
    user_id: str
    replies: List[str] = field(default_factory=list)
    step: Optional[SessionStep] = None
    order: Optional[Order] = None

    def say(self, text: str) -> None:
        self.replies.append(text)


class OrderConversation:
    def __init__(
        self,
        catalog: Catalog,
        sessions: SessionStore,
        store,
        broker: AssignmentBroker,
        gateway,
        id_allocator: Optional[OrderIdAllocator] = None,
    ) -> None:
        """Purpose: Wire the dialog to its catalog, session store, order store, broker, gateway.
        Inputs/Outputs: Collaborators are passed in; no return value.
        Side Effects / State: Registers the per-step handlers.
        Dependencies: SessionStore for per-user locking; store for insert_order.
        Failure Modes: None at init.
        If Removed: Customers cannot order.
        Testing Notes: Build with InMemoryOrderStore and a recording gateway.
        """
        # Keep collaborators and map each step to its handler.
        self._catalog = catalog
        self._sessions = sessions
        self._store = store
        self._broker = broker
        self._gateway = gateway
        self._ids = id_allocator or OrderIdAllocator()
        self._handlers: Dict[SessionStep, Callable[[Session, str, TurnResult], None]] = {
            SessionStep.CATALOG: self._step_catalog,
            SessionStep.ORDERING: self._step_ordering,
            SessionStep.GET_NAME: self._step_get_name,
            SessionStep.GET_ADDRESS: self._step_get_address,
            SessionStep.GET_PAYMENT: self._step_get_payment,
            SessionStep.CONFIRM: self._step_confirm,
        }

    def handle_message(self, user_id: str, text: str) -> TurnResult:
        """Purpose: Advance the user's dialog by one inbound message.
        Inputs/Outputs: Inputs are sender id and message text; output is a TurnResult.
        Side Effects / State: Mutates or ends the session, may persist an order, sends
            replies through the gateway, and publishes a placed order to vendors.
        Dependencies: Runs under SessionStore.user_lock so one user's messages never
            interleave.
        Failure Modes: OrderStoreError from insert_order propagates with the session left
            at CONFIRM, so a redelivered "place order" finishes the job under the same order id.
        If Removed: The webhook has nowhere to route customer messages.
        Testing Notes: Drive a full dialog and assert replies, steps, and the stored order.
        """
        # Serialize per user, decide replies, then deliver them in program order.
        text = (text or "").strip()
        with self._sessions.user_lock(user_id):
            turn = self._run_turn(user_id, text)
            for reply in turn.replies:
                self._gateway.send(user_id, reply)
            if turn.order is not None:
                self._broker.publish(turn.order)
        return turn

    def _run_turn(self, user_id: str, text: str) -> TurnResult:
        turn = TurnResult(user_id=user_id)
        command = normalize_command(text)
        session = self._sessions.get(user_id)

        if session is None and command == PLACE_ORDER_COMMAND and self._sessions.recently_placed(user_id):
            logger.info("user=%s duplicate place order ignored", mask_number(user_id))
            turn.say(replies.ALREADY_PLACED)
            return turn

        if session is not None and command == CANCEL_COMMAND:
            self._sessions.drop(user_id)
            logger.info("user=%s session cancelled step=%s", mask_number(user_id), session.step.value)
            turn.say(replies.CANCELLED)
            return turn

        if session is None:
            session = self._sessions.get_or_create(user_id)
            logger.info("user=%s session started", mask_number(user_id))

        before = session.step
        self._handlers[session.step](session, text, turn)
        if turn.order is None:
            turn.step = session.step
        if turn.step != before:
            logger.info(
                "user=%s step=%s next=%s",
                mask_number(user_id),
                before.value,
                turn.step.value if turn.step else "closed",
            )
        return turn

    def _step_catalog(self, session: Session, text: str, turn: TurnResult) -> None:
        turn.say(replies.catalog_menu(self._catalog))
        session.advance()

    def _step_ordering(self, session: Session, text: str, turn: TurnResult) -> None:
        if normalize_command(text) == DONE_COMMAND:
            if session.cart.is_empty():
                turn.say(replies.CART_EMPTY)
                return
            session.advance()
            turn.say(replies.ASK_NAME)
            return

        parsed = parse_line_item(text, self._catalog)
        if isinstance(parsed, ParseError):
            # User input, not a fault: hint and stay.
            turn.say(replies.UNKNOWN_ITEM_HINT if parsed.reason == "unknown_item" else replies.ITEM_FORMAT_HINT)
            return
        session.cart.add(parsed)
        turn.say(replies.item_added(parsed))
        turn.say(replies.ADD_MORE)

    def _step_get_name(self, session: Session, text: str, turn: TurnResult) -> None:
        if not text:
            turn.say(replies.ASK_NAME)
            return
        session.customer.name = text
        session.advance()
        turn.say(replies.ASK_ADDRESS)

    def _step_get_address(self, session: Session, text: str, turn: TurnResult) -> None:
        if not text:
            turn.say(replies.ASK_ADDRESS)
            return
        session.customer.address = text
        session.advance()
        turn.say(replies.ASK_PAYMENT)

    def _step_get_payment(self, session: Session, text: str, turn: TurnResult) -> None:
        if not text:
            turn.say(replies.ASK_PAYMENT)
            return
        session.customer.payment_method = text
        session.advance()
        turn.say(replies.order_summary(session.cart.items, session.customer, session.cart.total()))

    def _step_confirm(self, session: Session, text: str, turn: TurnResult) -> None:
        if normalize_command(text) != PLACE_ORDER_COMMAND:
            turn.say(replies.CONFIRM_PROMPT)
            return
        if session.order_id is None:
            session.order_id = self._ids.next_id()
        # A failed attempt may have been written before the error surfaced.
        order = self._store.find_order(session.order_id)
        if order is not None:
            logger.info(
                "user=%s order already persisted order=%s", mask_number(session.user_id), order.order_id
            )
        else:
            order = Order(
                order_id=session.order_id,
                customer_id=session.user_id,
                line_items=list(session.cart.items),
                customer=session.customer.model_copy(),
            )
            # Persist first; if this raises the session stays at CONFIRM for the retry.
            self._store.insert_order(order)
        self._sessions.mark_placed(session.user_id)
        self._sessions.drop(session.user_id)
        turn.order = order
        turn.say(replies.order_placed(order.order_id))
        logger.info(
            "user=%s order placed order=%s items=%d total=%s",
            mask_number(session.user_id),
            order.order_id,
            len(order.line_items),
            order.total,
        )
