from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for the messaging provider, storage, and dialog limits."""
    whatsapp_token: str
    phone_number_id: str
    graph_api_version: str
    verify_token: str
    mongodb_uri: str
    mongodb_db: str
    verified_numbers: FrozenSet[str]
    vendor_numbers: FrozenSet[str]
    catalog_path: Path
    session_ttl_seconds: int
    max_sessions: int
    placed_order_window_seconds: int
    send_timeout_seconds: int
    log_level: str
    port: int


def parse_number_list(raw: str) -> FrozenSet[str]:
    """Purpose: Turn a comma-separated allowlist into a set of phone numbers.
    Inputs/Outputs: Input is the raw env string; output is a frozenset of stripped ids.
    Side Effects / State: None; pure function.
    Dependencies: Used by load_settings for VERIFIED_NUMBERS and VENDOR_NUMBERS.
    Failure Modes: Empty or blank input yields an empty set.
    If Removed: Access control has no way to receive its allowlists.
    Testing Notes: "  1, 2,,3 " should give {"1", "2", "3"}; a leading "+" is dropped.
    """
    # Split on commas and drop blanks and a leading "+" so ids match provider senders.
    numbers = set()
    for part in (raw or "").split(","):
        cleaned = part.strip().lstrip("+")
        if cleaned:
            numbers.add(cleaned)
    return frozenset(numbers)


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Non-integer SESSION_TTL_SECONDS/MAX_SESSIONS/PLACED_ORDER_WINDOW_SECONDS/
        SEND_TIMEOUT_SECONDS/PORT values raise ValueError.
    If Removed: App cannot configure the provider, store, or allowlists and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve the catalog path, then build Settings.
    catalog_path = os.getenv("CATALOG_PATH")
    if catalog_path:
        catalog_file = Path(catalog_path)
    else:
        catalog_file = (BASE_DIR / ".." / "resources" / "catalog.json").resolve()

    return Settings(
        whatsapp_token=os.getenv("WHATSAPP_TOKEN", ""),
        phone_number_id=os.getenv("PHONE_NUMBER_ID", ""),
        graph_api_version=os.getenv("GRAPH_API_VERSION", "v19.0"),
        verify_token=os.getenv("VERIFY_TOKEN", ""),
        mongodb_uri=os.getenv("MONGODB_URI", ""),
        mongodb_db=os.getenv("MONGODB_DB", "whatsappBot"),
        verified_numbers=parse_number_list(os.getenv("VERIFIED_NUMBERS", "")),
        vendor_numbers=parse_number_list(os.getenv("VENDOR_NUMBERS", "")),
        catalog_path=catalog_file,
        session_ttl_seconds=int(os.getenv("SESSION_TTL_SECONDS", "1800")),
        max_sessions=int(os.getenv("MAX_SESSIONS", "10000")),
        placed_order_window_seconds=int(os.getenv("PLACED_ORDER_WINDOW_SECONDS", "600")),
        send_timeout_seconds=int(os.getenv("SEND_TIMEOUT_SECONDS", "10")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        port=int(os.getenv("PORT", "10000")),
    )
