"""
Connector service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from api.routes import router as connectors_router
from config.settings import config
from connectors.encryption import CredentialCipher
from connectors.metadata import EncryptionMetadataStore
from connectors.notifier import LoggingNotifier, Notifier
from connectors.registry import build_default_registry
from connectors.service import ConnectorService
from connectors.store import ConnectorStore
from connectors.sync import InMemoryItemSink, ItemSink, SyncEngine
from connectors.vault import TokenVault
from database.session import dispose_engine, get_session_factory, init_db
from database.stores import SqlConnectorStore, SqlMetadataStore

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "aiosqlite", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(
    store: Optional[ConnectorStore] = None,
    metadata_store: Optional[EncryptionMetadataStore] = None,
    notifier: Optional[Notifier] = None,
    sink: Optional[ItemSink] = None,
    cipher: Optional[CredentialCipher] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the application.

    Without injected stores the connector records and encryption metadata
    live in the SQL database from ``config.database_url``; tables are
    created on startup.
    """
    use_database = store is None or metadata_store is None
    if use_database:
        session_factory = get_session_factory()
        store = store or SqlConnectorStore(session_factory)
        metadata_store = metadata_store or SqlMetadataStore(session_factory)

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
    notifier = notifier or LoggingNotifier()
    vault = TokenVault(cipher or CredentialCipher(), metadata_store, store)
    registry = build_default_registry(store, notifier, vault, client)

    app = FastAPI(
        title="Connector Service",
        version="1.0.0",
        description="OAuth connectors with incremental sync for third-party content providers.",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    app.include_router(connectors_router, prefix="/api/v1/connectors")

    app.state.provider_registry = registry
    app.state.connector_service = ConnectorService(registry, store, vault)
    app.state.sync_engine = SyncEngine(registry, store, sink or InMemoryItemSink())

    @app.on_event("startup")
    async def on_startup():
        if use_database:
            logger.info("Ensuring database schema…")
            await init_db()
        logger.info(
            "Registered providers: %s",
            ", ".join(p.value for p in registry.get_registered()),
        )
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        await registry.clear_cache()
        if owns_client:
            await client.aclose()
        if use_database:
            await dispose_engine()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
