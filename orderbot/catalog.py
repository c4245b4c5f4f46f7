"""Catalog loading, line-item parsing, and cart arithmetic.

The catalog is a static price list loaded once at startup from catalog.json (or the
built-in list when that file is absent). Line items are parsed from "<item> x <qty>"
messages and priced against the catalog at parse time.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .models import LineItem

logger = logging.getLogger("orderbot.catalog")

CURRENCY = "₹"

LINE_ITEM_RE = re.compile(r"(.+?)\s*x\s*(\d+)", re.IGNORECASE)

DEFAULT_TITLE = "Mochitochi Laundry Menu"
DEFAULT_ENTRIES = [
    {"name": "Shirt", "price": "15", "emoji": "👕"},
    {"name": "Pants", "price": "20", "emoji": "👖"},
    {"name": "Saree", "price": "100", "emoji": "👗"},
    {"name": "Suit", "price": "250", "emoji": "🧥"},
]


@dataclass(frozen=True)
class CatalogEntry:
    """Priced catalog item; `key` is the lowercase name used for matching."""
    name: str
    unit_price: Decimal
    emoji: str = ""

    @property
    def key(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class CatalogMeta:
    """Metadata describing the catalog source for logging."""
    source: str
    updated_at: str
    sha256: str


@dataclass(frozen=True)
class ParseError:
    """Recognized non-item input. `reason` is "format" or "unknown_item"."""
    reason: str
    text: str


class Catalog:
    def __init__(self, entries: List[CatalogEntry], title: str = DEFAULT_TITLE) -> None:
        if not entries:
            raise ValueError("Catalog requires at least one entry")
        self.title = title
        self._entries = list(entries)

    @property
    def entries(self) -> List[CatalogEntry]:
        return list(self._entries)

    def resolve(self, item_name: str) -> Optional[CatalogEntry]:
        """Purpose: Find the catalog entry whose name occurs in the typed item name.
        Inputs/Outputs: Input is free text such as "white shirts"; output is the entry or None.
        Side Effects / State: None.
        Dependencies: Uses catalog order; called by parse_line_item.
        Failure Modes: Unknown items return None.
        If Removed: Line items cannot be priced.
        Testing Notes: First match in catalog order wins, even when a later key also matches.
        """
        # Case-insensitive substring match, first entry wins.
        lowered = item_name.lower()
        for entry in self._entries:
            if entry.key in lowered:
                return entry
        return None


def parse_line_item(text: str, catalog: Catalog) -> Union[LineItem, ParseError]:
    """Purpose: Turn "<item name> x <quantity>" into a priced LineItem.
    Inputs/Outputs: Inputs are the user text and catalog; output is LineItem or ParseError.
    Side Effects / State: None; pure function.
    Dependencies: Uses LINE_ITEM_RE and Catalog.resolve.
    Failure Modes: Missing pattern or quantity < 1 yields ParseError("format");
        an unpriced item yields ParseError("unknown_item").
    If Removed: The ORDERING step cannot build a cart.
    Testing Notes: "Shirt x 2" -> Shirt/2/15; "Shirt x 0" and "hello" are format errors.
    """
    # Match lazily so "Shirt x 2" splits into name "Shirt" and quantity 2.
    match = LINE_ITEM_RE.search(text or "")
    if not match:
        return ParseError(reason="format", text=text)
    name = match.group(1).strip()
    quantity = int(match.group(2))
    if not name or quantity < 1:
        return ParseError(reason="format", text=text)
    entry = catalog.resolve(name)
    if entry is None:
        return ParseError(reason="unknown_item", text=text)
    return LineItem(name=name, quantity=quantity, unit_price=entry.unit_price)


@dataclass
class Cart:
    """Ordered line items of one in-progress session."""
    items: List[LineItem] = field(default_factory=list)

    def add(self, item: LineItem) -> None:
        self.items.append(item)

    def is_empty(self) -> bool:
        return not self.items

    def total(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal("0"))

    def __len__(self) -> int:
        return len(self.items)


def format_money(amount: Decimal) -> str:
    return f"{CURRENCY}{amount}"


def load_catalog(path: Optional[Path]) -> Catalog:
    """Purpose: Load the catalog from JSON, falling back to the built-in price list.
    Inputs/Outputs: Input is an optional Path; output is a Catalog.
    Side Effects / State: Reads the file and logs its source metadata.
    Dependencies: Uses json, hashlib, and _build_entries.
    Failure Modes: Invalid JSON or prices raise ValueError; a missing file uses defaults.
    If Removed: The app has no price list and cannot start the dialog.
    Testing Notes: Load a temp JSON file and verify order and prices are preserved.
    """
    # Read bytes for hashing and parse JSON into entries.
    if path is None or not path.exists():
        logger.info("catalog source=builtin items=%d", len(DEFAULT_ENTRIES))
        return Catalog(_build_entries(DEFAULT_ENTRIES), title=DEFAULT_TITLE)

    raw_bytes = path.read_bytes()
    meta = CatalogMeta(
        source=path.name,
        updated_at=datetime.fromtimestamp(path.stat().st_mtime).isoformat(),
        sha256=hashlib.sha256(raw_bytes).hexdigest(),
    )
    try:
        data = json.loads(raw_bytes.decode("utf-8-sig"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Catalog file {path} is not valid JSON") from exc

    title = DEFAULT_TITLE
    items: List[Dict[str, Any]]
    if isinstance(data, dict):
        title = str(data.get("title") or DEFAULT_TITLE)
        items = data.get("items", [])
    elif isinstance(data, list):
        items = data
    else:
        items = []

    catalog = Catalog(_build_entries(items), title=title)
    logger.info(
        "catalog source=%s updated_at=%s sha256=%s items=%d",
        meta.source,
        meta.updated_at,
        meta.sha256[:12],
        len(catalog.entries),
    )
    return catalog


def _build_entries(items: List[Dict[str, Any]]) -> List[CatalogEntry]:
    entries: List[CatalogEntry] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        if not name:
            continue
        try:
            price = Decimal(str(item.get("price")))
        except InvalidOperation as exc:
            raise ValueError(f"Catalog item {name!r} has an invalid price") from exc
        if price <= 0:
            raise ValueError(f"Catalog item {name!r} must have a positive price")
        entries.append(CatalogEntry(name=name, unit_price=price, emoji=str(item.get("emoji") or "")))
    return entries
