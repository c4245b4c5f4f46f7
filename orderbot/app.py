from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from .broker import AssignmentBroker
from .catalog import Catalog, load_catalog
from .config import Settings, load_settings
from .conversation import OrderConversation
from .dispatcher import DispatchStatus, WebhookDispatcher
from .idempotency import ProcessedMessageLog
from .messaging import WhatsAppGateway
from .models import WebhookAck
from .order_store import InMemoryOrderStore, MongoOrderStore, OrderStoreError
from .session_store import SessionStore

BASE_DIR = Path(__file__).resolve().parent

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)
else:
    load_dotenv()

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
logger = logging.getLogger("orderbot.app")

PROCESSED_MESSAGE_TTL_SECONDS = 24 * 3600


@dataclass
class Services:
    """Everything one app instance owns; no module-level mutable state."""
    settings: Settings
    catalog: Catalog
    store: object
    gateway: object
    sessions: SessionStore
    broker: AssignmentBroker
    conversation: OrderConversation
    dispatcher: WebhookDispatcher


def build_services(
    settings: Settings,
    store: Optional[object] = None,
    gateway: Optional[object] = None,
    catalog: Optional[Catalog] = None,
) -> Services:
    """Purpose: Construct and wire the core collaborators for one app instance.
    Inputs/Outputs: Inputs are Settings plus optional store/gateway/catalog overrides;
        output is a Services bundle.
    Side Effects / State: Sets the orderbot log level; may open a MongoDB client and read
        the catalog file.
    Dependencies: MongoOrderStore or InMemoryOrderStore, WhatsAppGateway, load_catalog.
    Failure Modes: OrderStoreError when MongoDB indexes cannot be prepared; ValueError on a
        bad catalog file.
    If Removed: create_app has nothing to route webhooks to.
    Testing Notes: Pass an InMemoryOrderStore and a recording gateway.
    """
    # Apply the configured level, pick the store, then build the core bottom-up.
    logging.getLogger("orderbot").setLevel(getattr(logging, settings.log_level, logging.INFO))
    if store is None:
        if settings.mongodb_uri:
            store = MongoOrderStore.from_uri(settings.mongodb_uri, settings.mongodb_db)
        else:
            logger.warning("MONGODB_URI not set; orders are kept in memory only")
            store = InMemoryOrderStore()
    if gateway is None:
        gateway = WhatsAppGateway(settings)
    if catalog is None:
        catalog = load_catalog(settings.catalog_path)
    if not settings.verified_numbers and not settings.vendor_numbers:
        logger.warning("VERIFIED_NUMBERS and VENDOR_NUMBERS are empty; every sender will be rejected")

    sessions = SessionStore(
        ttl_seconds=settings.session_ttl_seconds,
        max_sessions=settings.max_sessions,
        placed_window_seconds=settings.placed_order_window_seconds,
    )
    broker = AssignmentBroker(store, gateway, settings.vendor_numbers)
    conversation = OrderConversation(catalog, sessions, store, broker, gateway)
    dispatcher = WebhookDispatcher(
        conversation,
        broker,
        gateway,
        sessions,
        verified_numbers=settings.verified_numbers,
        vendor_numbers=settings.vendor_numbers,
        processed=ProcessedMessageLog(PROCESSED_MESSAGE_TTL_SECONDS),
    )
    return Services(
        settings=settings,
        catalog=catalog,
        store=store,
        gateway=gateway,
        sessions=sessions,
        broker=broker,
        conversation=conversation,
        dispatcher=dispatcher,
    )


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Purpose: Build the FastAPI app exposing the webhook handshake and receiver.
    Inputs/Outputs: Optional Settings and prebuilt Services; returns a FastAPI app.
    Side Effects / State: Stores Services on app.state.
    Dependencies: build_services, WebhookDispatcher.
    Failure Modes: Errors from build_services propagate at startup.
    If Removed: The provider has no endpoint to deliver messages to.
    Testing Notes: Use fastapi.testclient.TestClient with injected Services.
    """
    # Resolve services once and close over them in the route handlers.
    if services is None:
        services = build_services(settings or load_settings())
    app = FastAPI(title="Order Intake Bot")
    app.state.services = services

    @app.get("/webhook", response_class=PlainTextResponse)
    def verify_webhook(
        mode: Optional[str] = Query(default=None, alias="hub.mode"),
        token: Optional[str] = Query(default=None, alias="hub.verify_token"),
        challenge: str = Query(default="", alias="hub.challenge"),
    ) -> PlainTextResponse:
        """Purpose: Answer the provider's subscription handshake.
        Inputs/Outputs: Query params hub.mode/hub.verify_token/hub.challenge; returns the
            challenge on success, 403 otherwise.
        Side Effects / State: None.
        Dependencies: Settings.verify_token.
        Failure Modes: Empty VERIFY_TOKEN never verifies.
        If Removed: The provider refuses to register the webhook.
        Testing Notes: Correct token echoes the challenge; wrong token yields 403.
        """
        # Echo the challenge only for a subscribe request carrying our token.
        expected = services.settings.verify_token
        if mode == "subscribe" and expected and token == expected:
            logger.info("webhook verified")
            return PlainTextResponse(challenge, status_code=200)
        logger.warning("webhook verification failed mode=%s", mode)
        return PlainTextResponse("Forbidden", status_code=403)

    @app.post("/webhook", response_model=WebhookAck)
    async def receive_webhook(request: Request):
        """Purpose: Accept a provider delivery and run it through the dispatcher.
        Inputs/Outputs: Input is the raw JSON body; output is WebhookAck.
        Side Effects / State: Runs the blocking core in the threadpool so users proceed
            in parallel.
        Dependencies: WebhookDispatcher.handle_payload.
        Failure Modes: OrderStoreError becomes HTTP 500 so the provider redelivers.
        If Removed: No inbound messages reach the bot.
        Testing Notes: Post a text payload and verify 200 and the replies sent.
        """
        # Treat undecodable bodies as "no message" and acknowledge them.
        try:
            data = await request.json()
        except ValueError:
            return WebhookAck(status=DispatchStatus.IGNORED.value)
        try:
            status = await run_in_threadpool(services.dispatcher.handle_payload, data)
        except OrderStoreError:
            logger.exception("webhook processing failed on storage")
            return JSONResponse(status_code=500, content={"status": "error"})
        if status in (DispatchStatus.CLAIM, DispatchStatus.CONVERSATION):
            return WebhookAck(status="ok")
        return WebhookAck(status=status.value)

    return app


def run() -> None:
    import uvicorn

    settings = load_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
