"""
FastAPI dependencies (shared across routes).

The application wires one instance of each collaborator at startup and
keeps it on ``app.state``; routes pull them from there.
"""

from __future__ import annotations

from fastapi import Request

from connectors.registry import ProviderRegistry
from connectors.service import ConnectorService
from connectors.sync import SyncEngine


def get_service(request: Request) -> ConnectorService:
    return request.app.state.connector_service


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.provider_registry


def get_sync_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine
