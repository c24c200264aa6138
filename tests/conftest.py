"""Shared fixtures: in-memory stores, a fast cipher and MockTransport-backed providers."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from connectors.base import BaseConnectorProvider
from connectors.encryption import CredentialCipher
from connectors.errors import ProviderError
from connectors.metadata import InMemoryMetadataStore
from connectors.models import (
    AccountInfo,
    Capabilities,
    ChangesResult,
    Connector,
    ConnectorItem,
    ContentResult,
    ListOptions,
    ListResult,
    OAuthConfig,
    OAuthResult,
    ProviderId,
    ProviderMetadata,
    SearchResult,
    TokenRefreshResult,
)
from connectors.notifier import CollectingNotifier
from connectors.registry import ProviderRegistry
from connectors.store import InMemoryConnectorStore
from connectors.vault import TokenVault


def json_response(data: Any, status_code: int = 200, **kwargs: Any) -> httpx.Response:
    return httpx.Response(status_code, json=data, **kwargs)


def bearer(request: httpx.Request) -> str:
    return request.headers.get("Authorization", "").removeprefix("Bearer ")


def request_json(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content or b"{}")


class RecordingHandler:
    """MockTransport handler that records every request before delegating."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self._handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def cipher() -> CredentialCipher:
    # low iteration count keeps the suite fast
    return CredentialCipher(secret="test-encryption-secret", iterations=1_000)


@pytest.fixture
def store() -> InMemoryConnectorStore:
    return InMemoryConnectorStore()


@pytest.fixture
def metadata_store() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def notifier() -> CollectingNotifier:
    return CollectingNotifier()


@pytest.fixture
def vault(cipher, metadata_store, store) -> TokenVault:
    return TokenVault(cipher, metadata_store, store)


@pytest.fixture
def make_connector(store, vault):
    """Async factory persisting a connector with encrypted tokens."""

    async def _make(
        provider: ProviderId = ProviderId.GMAIL,
        access_token: str = "access-1",
        refresh_token: Optional[str] = "refresh-1",
        **fields: Any,
    ) -> Connector:
        connector = Connector(provider=provider, name=f"{provider.value} test", **fields)
        access = await vault.encrypt_token(access_token)
        connector.encrypted_token = access.ciphertext
        connector.token_iv = access.iv
        refresh = None
        if refresh_token:
            refresh = await vault.encrypt_token(refresh_token)
            connector.encrypted_refresh_token = refresh.ciphertext
            connector.refresh_token_iv = refresh.iv
        await store.save(connector)
        await vault.store_metadata(connector.id, access.iv, access.salt)
        if refresh is not None:
            await vault.store_metadata(connector.id, refresh.iv, refresh.salt, is_refresh=True)
        return await store.get(connector.id)

    return _make


@pytest.fixture
def make_provider(store, notifier, vault):
    """Instantiate *provider_cls* on a MockTransport; returns (provider, recorder)."""

    def _make(provider_cls, handler: Callable[[httpx.Request], httpx.Response]):
        recorder = RecordingHandler(handler)
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        provider = provider_cls(store=store, notifier=notifier, vault=vault, client=client)
        return provider, recorder

    return _make


# ── Scripted provider ──────────────────────────────────────────────────

FAKE_METADATA = ProviderMetadata(
    id=ProviderId.FIGMA,
    name="Figma",
    description="Scripted provider used by the engine and API tests",
    capabilities=Capabilities(read=True, search=True),
    oauth=OAuthConfig(
        auth_url="https://fake.example.com/oauth/authorize",
        token_url="https://fake.example.com/oauth/token",
        scopes=["files:read"],
        client_id="fake-client",
    ),
)


def fake_item(external_id: str, name: Optional[str] = None) -> ConnectorItem:
    return ConnectorItem(external_id=external_id, name=name or external_id, path=f"/{external_id}")


class FakeProvider(BaseConnectorProvider):
    """
    Provider whose ``get_changes`` replays ``script`` one entry per call.

    Entries are ``ChangesResult`` objects or exceptions to raise; every
    cursor it was called with is kept in ``cursors``.
    """

    metadata = FAKE_METADATA

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.script: List[Any] = []
        self.cursors: List[Optional[str]] = []
        self.revoked: List[str] = []
        self.fail_revoke = False

    def get_auth_url(self, state: str, code_challenge: str) -> str:
        return self.build_auth_url(state, code_challenge)

    async def exchange_code(self, code: str, code_verifier: str) -> OAuthResult:
        return OAuthResult(
            access_token=f"access-for-{code}",
            refresh_token="fake-refresh",
            expires_in=3600,
            scope="files:read",
        )

    async def refresh_token(self, connector: Connector) -> TokenRefreshResult:
        return TokenRefreshResult(access_token="refreshed-access", expires_in=3600)

    async def validate_token(self, token: str) -> bool:
        return token.startswith("access-for-")

    async def revoke_access(self, connector: Connector) -> None:
        if self.fail_revoke:
            raise ProviderError(503, "revocation endpoint unavailable")
        self.revoked.append(connector.id)

    async def get_account_info(self, token: str) -> AccountInfo:
        return AccountInfo(id="fake-user", email="designer@example.com", name="Designer")

    async def list(self, connector: Connector, options: Optional[ListOptions] = None) -> ListResult:
        return ListResult(items=[fake_item("file-1"), fake_item("file-2")])

    async def list_with_token(self, token: str, options: Optional[ListOptions] = None) -> ListResult:
        return ListResult(items=[fake_item("file-1")])

    async def read(self, connector: Connector, external_id: str) -> ContentResult:
        return ContentResult(content=f"content of {external_id}", mime_type="text/plain")

    async def search(self, connector: Connector, query: str) -> SearchResult:
        return SearchResult(items=[fake_item("file-1", name=query)], total_count=1)

    async def get_changes(self, connector: Connector, cursor: Optional[str]) -> ChangesResult:
        self.cursors.append(cursor)
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step

    def normalize_item(self, raw_item: Dict[str, Any]) -> ConnectorItem:
        return fake_item(raw_item["id"], raw_item.get("name"))


@pytest.fixture
def registry(store, notifier, vault) -> ProviderRegistry:
    registry = ProviderRegistry(store, notifier, vault, client=httpx.AsyncClient())
    registry.register(FAKE_METADATA, lambda: FakeProvider)
    return registry
