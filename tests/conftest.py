from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from orderbot.broker import AssignmentBroker
from orderbot.catalog import load_catalog
from orderbot.config import Settings
from orderbot.conversation import OrderConversation
from orderbot.dispatcher import WebhookDispatcher
from orderbot.idempotency import ProcessedMessageLog
from orderbot.models import CustomerInfo, LineItem, Order
from orderbot.order_store import InMemoryOrderStore, OrderStoreError
from orderbot.session_store import SessionStore

CUSTOMER = "919900000001"
OTHER_CUSTOMER = "919900000002"
VENDOR_A = "919900000101"
VENDOR_B = "919900000102"
STRANGER = "15550000000"


class RecordingGateway:
    """Collects outbound sends instead of calling the provider."""

    def __init__(self, failing: Tuple[str, ...] = ()) -> None:
        self.sent: List[Tuple[str, str]] = []
        self.failing = set(failing)

    def send(self, to: str, text: str) -> bool:
        self.sent.append((to, text))
        return to not in self.failing

    def messages_to(self, user_id: str) -> List[str]:
        return [text for to, text in self.sent if to == user_id]

    def clear(self) -> None:
        self.sent.clear()


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyOrderStore(InMemoryOrderStore):
    """In-memory store whose next `fail_inserts` inserts raise OrderStoreError."""

    def __init__(self, fail_inserts: int = 0) -> None:
        super().__init__()
        self.fail_inserts = fail_inserts

    def insert_order(self, order) -> None:
        if self.fail_inserts > 0:
            self.fail_inserts -= 1
            raise OrderStoreError("connection refused")
        super().insert_order(order)


def make_settings(**overrides) -> Settings:
    values = dict(
        whatsapp_token="test-token",
        phone_number_id="12345",
        graph_api_version="v19.0",
        verify_token="verify-me",
        mongodb_uri="",
        mongodb_db="whatsappBot",
        verified_numbers=frozenset({CUSTOMER, OTHER_CUSTOMER}),
        vendor_numbers=frozenset({VENDOR_A, VENDOR_B}),
        catalog_path=Path("does-not-exist.json"),
        session_ttl_seconds=1800,
        max_sessions=10000,
        placed_order_window_seconds=600,
        send_timeout_seconds=5,
        log_level="INFO",
        port=10000,
    )
    values.update(overrides)
    return Settings(**values)


def send_all(conversation: OrderConversation, user_id: str, *texts: str):
    results = []
    for text in texts:
        results.append(conversation.handle_message(user_id, text))
    return results


@pytest.fixture
def catalog():
    return load_catalog(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FlakyOrderStore()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def sessions(clock):
    return SessionStore(ttl_seconds=1800, placed_window_seconds=600, clock=clock)


@pytest.fixture
def broker(store, gateway):
    return AssignmentBroker(store, gateway, [VENDOR_A, VENDOR_B])


@pytest.fixture
def conversation(catalog, sessions, store, broker, gateway):
    return OrderConversation(catalog, sessions, store, broker, gateway)


@pytest.fixture
def dispatcher(conversation, broker, gateway, sessions, clock):
    return WebhookDispatcher(
        conversation,
        broker,
        gateway,
        sessions,
        verified_numbers=[CUSTOMER, OTHER_CUSTOMER],
        vendor_numbers=[VENDOR_A, VENDOR_B],
        processed=ProcessedMessageLog(ttl_seconds=3600, clock=clock),
    )


def text_payload(sender: str, body: str, message_id: Optional[str] = "wamid.1") -> dict:
    message = {"from": sender, "type": "text", "text": {"body": body}}
    if message_id:
        message["id"] = message_id
    return {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"value": {"messages": [message]}}]}],
    }


def make_order(order_id: str, customer_id: str = CUSTOMER, created_at=None, **fields) -> Order:
    values = dict(
        order_id=order_id,
        customer_id=customer_id,
        line_items=[LineItem(name="Shirt", quantity=2, unit_price=Decimal("15"))],
        customer=CustomerInfo(name="Jane Doe", address="12 Elm St", payment_method="Cash"),
    )
    if created_at is not None:
        values["created_at"] = created_at
    values.update(fields)
    return Order(**values)
