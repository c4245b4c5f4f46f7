from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError

from . import replies
from .broker import AssignmentBroker
from .conversation import OrderConversation
from .idempotency import ProcessedMessageLog
from .models import WebhookPayload
from .session_store import SessionStore
from .utils import mask_number

logger = logging.getLogger("orderbot.dispatcher")

ACCEPT_RE = re.compile(r"^accept\s+(ord-\d+|\d{3,})$", re.IGNORECASE | re.ASCII)


class DispatchStatus(str, Enum):
    IGNORED = "ignored"
    REJECTED = "rejected"
    CLAIM = "claim"
    CONVERSATION = "conversation"


@dataclass(frozen=True)
class IncomingText:
    """Decoded (sender, text) pair taken from a provider delivery."""
    sender: str
    text: str
    message_id: Optional[str] = None


def extract_text_message(data: Any) -> Optional[IncomingText]:
    """Purpose: Pull the first text message out of a raw webhook body.
    Inputs/Outputs: Input is the decoded JSON body; output is IncomingText or None.
    Side Effects / State: None; pure function.
    Dependencies: Validates against WebhookPayload.
    Failure Modes: Malformed bodies, status callbacks, non-text messages, and blank text
        all return None.
    If Removed: The dispatcher cannot tell deliveries with a message from noise.
    Testing Notes: Feed a status-only payload and a valid text payload.
    """
    # Validate the envelope, then keep only non-blank text messages.
    if not isinstance(data, dict):
        return None
    try:
        payload = WebhookPayload.model_validate(data)
    except ValidationError:
        return None
    message = payload.first_message()
    if message is None or message.text is None:
        return None
    text = message.text.body.strip()
    sender = message.sender.strip()
    if not text or not sender:
        return None
    return IncomingText(sender=sender, text=text, message_id=message.id)


class WebhookDispatcher:
    """Routes decoded messages to the broker (vendor accepts) or the dialog."""

    def __init__(
        self,
        conversation: OrderConversation,
        broker: AssignmentBroker,
        gateway,
        sessions: SessionStore,
        verified_numbers: Iterable[str],
        vendor_numbers: Iterable[str],
        processed: Optional[ProcessedMessageLog] = None,
    ) -> None:
        self._conversation = conversation
        self._broker = broker
        self._gateway = gateway
        self._sessions = sessions
        self._vendors = frozenset(vendor_numbers)
        # Vendors are verified senders too.
        self._verified = frozenset(verified_numbers) | self._vendors
        self._processed = processed

    def handle_payload(self, data: Dict[str, Any]) -> DispatchStatus:
        """Purpose: Process one raw webhook delivery end to end.
        Inputs/Outputs: Input is the decoded JSON body; output is a DispatchStatus.
        Side Effects / State: Sweeps idle sessions; may mutate sessions, orders, vendors.
        Dependencies: extract_text_message, ProcessedMessageLog, dispatch.
        Failure Modes: OrderStoreError propagates and the message id is released.
        If Removed: The HTTP layer has no entry point into the core.
        Testing Notes: Replay the same message id and expect IGNORED on the second call.
        """
        # Housekeeping first, then decode, dedupe, and route.
        swept = self._sessions.sweep_expired()
        if swept:
            logger.info("expired sessions removed=%d", swept)
        if self._processed is not None:
            self._processed.sweep_expired()

        incoming = extract_text_message(data)
        if incoming is None:
            return DispatchStatus.IGNORED
        message_id = incoming.message_id or ""
        if self._processed is None:
            return self.dispatch(incoming.sender, incoming.text)
        if not self._processed.begin(message_id):
            logger.info("duplicate delivery ignored message_id=%s", message_id)
            return DispatchStatus.IGNORED
        try:
            return self.dispatch(incoming.sender, incoming.text)
        except Exception:
            # Let the provider's redelivery through.
            self._processed.forget(message_id)
            raise

    def dispatch(self, sender: str, text: str) -> DispatchStatus:
        """Purpose: Apply role checks and route one (sender, text) pair.
        Inputs/Outputs: Inputs are sender id and trimmed text; output is a DispatchStatus.
        Side Effects / State: Unverified senders only get a rejection reply.
        Dependencies: ACCEPT_RE, AssignmentBroker.claim, OrderConversation.handle_message.
        Failure Modes: Store errors propagate to the caller.
        If Removed: Vendor accepts and customer messages are never separated.
        Testing Notes: A verified non-vendor sending "ACCEPT 123" enters the dialog instead.
        """
        # Reject unknown senders before any state is created for them.
        if sender not in self._verified:
            logger.info("unverified sender=%s rejected", mask_number(sender))
            self._gateway.send(sender, replies.ACCESS_RESTRICTED)
            return DispatchStatus.REJECTED

        if sender in self._vendors:
            match = ACCEPT_RE.match(text.strip())
            if match:
                result = self._broker.claim(sender, match.group(1))
                logger.info("vendor=%s claim result=%s", mask_number(sender), result.value)
                return DispatchStatus.CLAIM

        self._conversation.handle_message(sender, text)
        return DispatchStatus.CONVERSATION
