"""User-facing message texts and renderers.

Every string sent to a customer or vendor lives here so the dialog and broker code only
decide *which* reply to send.
"""

from __future__ import annotations

from typing import Iterable

from .catalog import Catalog, format_money
from .models import CustomerInfo, LineItem, Order

ACCESS_RESTRICTED = "⚠ Access restricted to verified users."
CART_EMPTY = "🛒 Cart is empty!"
ITEM_FORMAT_HINT = '⚠ Format: "Shirt x 2"'
UNKNOWN_ITEM_HINT = '⚠ We don\'t have that item. Pick one from the menu, e.g. "Shirt x 2"'
ADD_MORE = '🛒 Add more or type "done"'
ASK_NAME = "👤 Enter your full name:"
ASK_ADDRESS = "📍 Enter delivery address:"
ASK_PAYMENT = "💳 Payment method: Cash / UPI / Card"
CONFIRM_PROMPT = '❓ Type "Place Order" to confirm.'
ALREADY_PLACED = "✅ Order already placed. Please wait."
CANCELLED = "🗑 Order cancelled. Type anything to start again."
ORDER_ALREADY_ASSIGNED = "🚫 This order is already assigned."


def catalog_menu(catalog: Catalog) -> str:
    lines = [f"🧺 {catalog.title}:", ""]
    for entry in catalog.entries:
        prefix = f"{entry.emoji} " if entry.emoji else ""
        lines.append(f"{prefix}{entry.name} – {format_money(entry.unit_price)}")
    lines.append("")
    lines.append('Reply like: "Shirt x 2"')
    lines.append('Type "done" when finished.')
    return "\n".join(lines)


def item_added(item: LineItem) -> str:
    return f"✅ Added: {item.name} x {item.quantity}"


def _item_lines(items: Iterable[LineItem], bullet: str) -> str:
    return "\n".join(
        f"{bullet} {item.name} x {item.quantity} = {format_money(item.subtotal)}" for item in items
    )


def order_summary(items: Iterable[LineItem], customer: CustomerInfo, total) -> str:
    return (
        "🧾 Order Summary:\n"
        f"{_item_lines(items, '•')}\n"
        "————————————\n"
        f"👤 Name: {customer.name}\n"
        f"🏠 Address: {customer.address}\n"
        f"💳 Payment: {customer.payment_method}\n"
        f"💰 Total: {format_money(total)}\n"
        "\n"
        '✅ Type "Place Order" to confirm.'
    )


def order_placed(order_id: str) -> str:
    return f"🎉 Order {order_id} placed! Finding vendor..."


def vendor_order_card(order: Order) -> str:
    return (
        "📢 New Order\n"
        f"🆔 Order ID: {order.order_id}\n"
        f"📞 Customer: {order.customer_id}\n"
        f"👤 Name: {order.customer.name}\n"
        f"🏠 Address: {order.customer.address}\n"
        f"💳 Payment: {order.customer.payment_method}\n"
        "\n"
        "🧺 Items:\n"
        f"{_item_lines(order.line_items, '-')}\n"
        f"💰 Total: {format_money(order.total)}\n"
        "\n"
        f"Reply: ACCEPT {order.order_id}"
    )


def vendor_accepted(order_id: str) -> str:
    return f"✅ You accepted order {order_id}. Proceed with pickup."


def vendor_already_holds(order_id: str) -> str:
    return f"ℹ You already accepted order {order_id}."


def customer_order_handled(order_id: str, vendor_id: str) -> str:
    return f"📦 Order {order_id} is now being handled by 📞 {vendor_id}."


def order_not_found(code: str) -> str:
    return f'❌ No order found matching "{code}".'
