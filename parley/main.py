"""Parley entry point.

Builds all components and starts the server:
  Settings -> Database / stores -> EventBus -> CompletionClient -> ChatRunner -> App -> Uvicorn

Components are constructed eagerly; anything that needs the event loop
(DB connection, httpx client, bus task) is started in the Starlette
lifespan so it runs on the same loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from starlette.applications import Starlette

from parley.api.rest import create_app
from parley.chat.client import CompletionClient
from parley.chat.providers import resolve_variant
from parley.chat.runner import ChatRunner
from parley.chat.tokens import TiktokenCounter
from parley.chat.usage import UsageRecorder
from parley.config import Settings
from parley.events import USAGE_RECORDED, Event, EventBus
from parley.storage.database import Database
from parley.storage.stores import (
    InMemoryMessageStore,
    InMemoryUsageLedger,
    SqlMessageStore,
    SqlUsageLedger,
    ledger_handler,
)

logger = logging.getLogger(__name__)


def create_components(settings: Settings) -> dict[str, Any]:
    """Construct all components in dependency order.

    1. Storage - Database + SQL stores, or in-memory stores
    2. EventBus - usage ledger registered as a handler
    3. CompletionClient - provider variant resolved from settings
    4. ChatRunner - per-request pipeline
    """
    database = None
    if settings.storage_backend == "sql":
        database = Database(settings)
        store: Any = SqlMessageStore(database)
        ledger: Any = SqlUsageLedger(database)
    else:
        store = InMemoryMessageStore()
        ledger = InMemoryUsageLedger()

    bus = EventBus()

    async def persist_usage(event: Event) -> None:
        await ledger_handler(ledger, event)

    bus.on(USAGE_RECORDED, persist_usage)

    variant = resolve_variant(settings.provider, settings.api_base_url or None)
    client = CompletionClient(settings, variant)
    recorder = UsageRecorder(bus=bus)
    runner = ChatRunner(
        settings,
        store,
        client,
        TiktokenCounter(),
        bus=bus,
        recorder=recorder,
    )
    return {
        "database": database,
        "store": store,
        "ledger": ledger,
        "bus": bus,
        "client": client,
        "recorder": recorder,
        "runner": runner,
    }


async def start_components(components: dict[str, Any]) -> None:
    database = components.get("database")
    if database is not None:
        await database.create_all()
        await database.connect()
    await components["bus"].start()
    await components["client"].start()


async def shutdown_components(components: dict[str, Any]) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Parley...")

    client = components.get("client")
    if client:
        await client.close()

    # Bus last among the async parts so queued usage records reach the ledger
    bus = components.get("bus")
    if bus:
        await bus.stop()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Parley shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app with a lifespan managing the components."""
    components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await start_components(components)
        app.state.components = components
        logger.info(
            "Parley started: provider=%s model=%s storage=%s",
            settings.provider,
            settings.model,
            settings.storage_backend,
        )
        yield
        await shutdown_components(components)

    return create_app(
        runner=components["runner"],
        settings=settings,
        database=components["database"],
        lifespan=lifespan,
    )


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Parley: %s / %s", settings.provider, settings.model)
    if settings.storage_backend == "sql":
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.key_for(settings.provider):
        logger.warning("No API key configured for provider '%s'; /chat endpoints will fail", settings.provider)

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
