from __future__ import annotations

import logging
from typing import Optional

import requests

from .config import Settings
from .utils import mask_number

logger = logging.getLogger("orderbot.messaging")

GRAPH_BASE_URL = "https://graph.facebook.com"


class WhatsAppGateway:
    """At-most-once text sender for the WhatsApp Cloud API; failures are logged, never raised."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        """Purpose: Configure the Graph API endpoint, auth header, and HTTP session.
        Inputs/Outputs: Input is Settings and an optional requests.Session; no return value.
        Side Effects / State: Holds a pooled HTTP session for all outbound sends.
        Dependencies: Uses requests and Settings from config.
        Failure Modes: Missing token or phone number id is logged; sends will then fail.
        If Removed: Customers and vendors receive no replies.
        Testing Notes: Pass a mocked session and assert the posted URL, headers, and JSON.
        """
        # Build the messages endpoint once and share one connection pool.
        if not settings.whatsapp_token or not settings.phone_number_id:
            logger.warning("whatsapp gateway missing WHATSAPP_TOKEN or PHONE_NUMBER_ID")
        self._url = f"{GRAPH_BASE_URL}/{settings.graph_api_version}/{settings.phone_number_id}/messages"
        self._timeout = settings.send_timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {settings.whatsapp_token}",
                "Content-Type": "application/json",
            }
        )

    def send(self, to: str, text: str) -> bool:
        """Purpose: Deliver one text message to a user id.
        Inputs/Outputs: Inputs are recipient id and body; returns True on a 2xx response.
        Side Effects / State: Performs one HTTP POST; no retry.
        Dependencies: Uses requests.Session.post.
        Failure Modes: Network errors and non-2xx responses are logged and return False.
        If Removed: The dialog and broker cannot reach users.
        Testing Notes: Simulate RequestException and a 400 response; both must return False.
        """
        # Post the text payload and report, but never propagate, delivery failures.
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        try:
            response = self._session.post(self._url, json=payload, timeout=self._timeout)
        except requests.RequestException as exc:
            logger.error("send failed to=%s error=%s", mask_number(to), exc)
            return False
        if not response.ok:
            logger.error(
                "send failed to=%s status=%s body=%s", mask_number(to), response.status_code, response.text
            )
            return False
        logger.info("message sent to=%s chars=%d", mask_number(to), len(text))
        return True
