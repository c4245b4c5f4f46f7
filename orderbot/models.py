from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from .utils import utcnow


class OrderStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"


class AssignmentResult(str, Enum):
    """Outcome of a vendor's claim on an order code."""
    ACCEPTED = "accepted"
    ALREADY_ASSIGNED = "already_assigned"
    NOT_FOUND = "not_found"


class LineItem(BaseModel):
    """One cart line; unit_price is a snapshot taken when the line was parsed."""
    name: str
    quantity: int = Field(ge=1)
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    @field_serializer("unit_price")
    def _serialize_price(self, value: Decimal) -> str:
        # BSON has no Decimal; keep money exact as text.
        return str(value)


class CustomerInfo(BaseModel):
    """Delivery details collected during the dialog."""
    name: str = ""
    address: str = ""
    payment_method: str = ""


class Order(BaseModel):
    """Persisted order record; status moves PENDING -> ASSIGNED exactly once."""
    model_config = ConfigDict(use_enum_values=True)

    order_id: str
    customer_id: str
    line_items: List[LineItem]
    customer: CustomerInfo
    status: OrderStatus = OrderStatus.PENDING
    vendor_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    assigned_at: Optional[datetime] = None

    @property
    def total(self) -> Decimal:
        return sum((item.subtotal for item in self.line_items), Decimal("0"))


class Vendor(BaseModel):
    """Vendor record with the ids of every order it has claimed."""
    vendor_id: str
    assigned_orders: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class TextBody(BaseModel):
    body: str = ""


class InboundMessage(BaseModel):
    """Single message inside a WhatsApp Cloud API webhook delivery."""
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from")
    id: Optional[str] = None
    type: str = "text"
    text: Optional[TextBody] = None


class ChangeValue(BaseModel):
    messages: List[InboundMessage] = Field(default_factory=list)


class Change(BaseModel):
    value: ChangeValue = Field(default_factory=ChangeValue)


class Entry(BaseModel):
    changes: List[Change] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """Request payload posted by the provider to the webhook."""
    object: Optional[str] = None
    entry: List[Entry] = Field(default_factory=list)

    def first_message(self) -> Optional[InboundMessage]:
        # Provider nests one message at entry[0].changes[0].value.messages[0].
        if not self.entry or not self.entry[0].changes:
            return None
        messages = self.entry[0].changes[0].value.messages
        return messages[0] if messages else None


class WebhookAck(BaseModel):
    """Response payload returned to the provider."""
    status: str
