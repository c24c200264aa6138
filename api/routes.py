"""
Connector API routes — providers, OAuth connect/callback, connections, sync.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from api.dependencies import get_registry, get_service, get_sync_engine
from connectors.errors import ConnectorError
from connectors.models import ListOptions
from connectors.registry import ProviderRegistry
from connectors.sanitizer import sanitize_error
from connectors.service import ConnectorService
from connectors.sync import SYNC_IN_PROGRESS, SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])


class SyncSettingsUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    sync_enabled: Optional[bool] = None
    sync_folders: Optional[List[str]] = None
    sync_interval: Optional[int] = None


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


# ── Providers & OAuth ──────────────────────────────────────────────────


@router.get("/providers")
async def list_providers(registry: ProviderRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    """All registered providers with their metadata. Used by the connector picker."""
    return [_dump(metadata) for metadata in registry.list_metadata()]


@router.get("/{provider}/auth-url")
async def get_auth_url(provider: str, service: ConnectorService = Depends(get_service)) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for a provider.

    Frontend should open this URL in a popup window.
    """
    auth_url, state = await service.begin_authorization(provider)
    return {"authUrl": auth_url, "state": state, "provider": provider}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    service: ConnectorService = Depends(get_service),
) -> HTMLResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Exchanges the code, stores the connector, and returns a small HTML
    page that notifies the opener window and auto-closes.
    """
    if error or not code or not state:
        message = f"Authorization denied: {error}" if error else "Missing code or state"
        return HTMLResponse(_callback_html(success=False, message=message, provider=provider))

    try:
        connector = await service.complete_authorization(state, code, provider=provider)
    except (ConnectorError, httpx.HTTPError) as exc:
        message = sanitize_error(exc)
        logger.error("OAuth callback failed for %s: %s", provider, message)
        return HTMLResponse(_callback_html(success=False, message=f"Connection failed: {message}", provider=provider))

    return HTMLResponse(
        _callback_html(
            success=True,
            message=f"Connected {connector.name}",
            provider=provider,
            connector_id=connector.id,
        )
    )


# ── Connections ────────────────────────────────────────────────────────


@router.get("/connections")
async def list_connections(service: ConnectorService = Depends(get_service)) -> List[Dict[str, Any]]:
    return [c.public_view() for c in await service.list_connectors()]


@router.get("/connections/{connector_id}")
async def get_connection(connector_id: str, service: ConnectorService = Depends(get_service)) -> Dict[str, Any]:
    return (await service.get_connector(connector_id)).public_view()


@router.patch("/connections/{connector_id}")
async def update_connection(
    connector_id: str,
    body: SyncSettingsUpdate,
    service: ConnectorService = Depends(get_service),
) -> Dict[str, Any]:
    """Edit sync settings; ``syncFolders: null`` means sync everything."""
    changes = body.model_dump(exclude_unset=True)
    connector = await service.update_sync_settings(connector_id, **changes)
    return connector.public_view()


@router.post("/connections/{connector_id}/refresh")
async def refresh_connection(connector_id: str, service: ConnectorService = Depends(get_service)) -> Dict[str, Any]:
    return (await service.refresh(connector_id)).public_view()


@router.delete("/connections/{connector_id}")
async def delete_connection(connector_id: str, service: ConnectorService = Depends(get_service)) -> Dict[str, Any]:
    """Disconnect and revoke a connector."""
    if not await service.disconnect(connector_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Connection not found")
    return {"status": "disconnected", "connectorId": connector_id}


# ── Content ────────────────────────────────────────────────────────────


@router.get("/connections/{connector_id}/items")
async def list_items(
    connector_id: str,
    path: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    page_size: Optional[int] = Query(None, alias="pageSize", ge=1, le=1000),
    service: ConnectorService = Depends(get_service),
    registry: ProviderRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """One page of the provider listing; the folder picker walks it with ``path``."""
    connector = await service.get_connector(connector_id)
    provider = await registry.get(connector.provider.value)
    result = await provider.list(connector, ListOptions(path=path, cursor=cursor, page_size=page_size))
    return _dump(result)


@router.get("/connections/{connector_id}/search")
async def search_items(
    connector_id: str,
    q: str = Query(..., min_length=1),
    service: ConnectorService = Depends(get_service),
    registry: ProviderRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    connector = await service.get_connector(connector_id)
    provider = await registry.get(connector.provider.value)
    if not provider.metadata.capabilities.search:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, f"{provider.metadata.name} does not support search")
    return _dump(await provider.search(connector, q))


# ── Sync ───────────────────────────────────────────────────────────────


@router.post("/connections/{connector_id}/sync")
async def sync_connection(
    connector_id: str,
    service: ConnectorService = Depends(get_service),
    engine: SyncEngine = Depends(get_sync_engine),
) -> Dict[str, Any]:
    """Run one sync cycle now, with retries."""
    await service.get_connector(connector_id)
    if engine.is_syncing(connector_id):
        raise HTTPException(status.HTTP_409_CONFLICT, SYNC_IN_PROGRESS)
    return _dump(await engine.sync_with_retry(connector_id))


@router.get("/connections/{connector_id}/sync-state")
async def get_sync_state(
    connector_id: str,
    service: ConnectorService = Depends(get_service),
    engine: SyncEngine = Depends(get_sync_engine),
) -> Optional[Dict[str, Any]]:
    await service.get_connector(connector_id)
    state = await engine.get_sync_state(connector_id)
    return _dump(state) if state else None


@router.delete("/connections/{connector_id}/sync-state")
async def reset_sync_state(
    connector_id: str,
    service: ConnectorService = Depends(get_service),
    engine: SyncEngine = Depends(get_sync_engine),
) -> Dict[str, Any]:
    """Forget the cursor; the next sync is a full one."""
    await service.get_connector(connector_id)
    await engine.clear_sync_state(connector_id)
    return {"status": "reset", "connectorId": connector_id}


# ── Callback HTML template ─────────────────────────────────────────────


def _callback_html(success: bool, message: str, provider: str, connector_id: Optional[str] = None) -> str:
    """
    Small HTML page shown in the OAuth popup after redirect.
    Sends a postMessage to the opener and auto-closes.
    """
    status_emoji = "✅" if success else "❌"
    status_text = "Connected!" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    payload = json.dumps(
        {
            "type": "oauth-callback",
            "provider": provider,
            "success": success,
            "message": message,
            "connectorId": connector_id,
        }
    ).replace("</", "<\\/")

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{html.escape(provider)} {status_text}</title>
    <style>
        body {{
            font-family: 'Inter', system-ui, sans-serif;
            background: #0b0d11; color: #e4e7ee;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{
            text-align: center; padding: 40px;
            background: #12151b; border: 1px solid #1f2330;
            border-radius: 12px; max-width: 400px;
        }}
        .emoji {{ font-size: 3rem; }}
        h2 {{ color: {color}; margin: 16px 0 8px; }}
        p {{ color: #a0a6b8; font-size: 0.85rem; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="emoji">{status_emoji}</div>
        <h2>{status_text}</h2>
        <p>{html.escape(message)}</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({payload}, '*');
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
