"""
BaseConnectorProvider — abstract interface for all connector providers.

Every provider (Gmail, Drive, Notion, …) subclasses this once and
implements the OAuth, content and delta-sync methods.  The base supplies
token handling (``TokenVault``) and authenticated HTTP
(``AuthenticatedFetcher``) from collaborators injected at construction.

Optional operations (``search``, ``initialize``, ``dispose``) have safe
defaults; callers consult ``metadata.capabilities`` instead of probing.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.errors import ContentTooLargeError, ProviderError
from connectors.fetcher import AuthenticatedFetcher
from connectors.models import (
    AccountInfo,
    ChangesResult,
    Connector,
    ConnectorItem,
    ContentResult,
    ListOptions,
    ListResult,
    OAuthResult,
    ProviderMetadata,
    SearchResult,
    TokenRefreshResult,
)
from connectors.notifier import Notifier
from connectors.sanitizer import sanitize_error_message
from connectors.store import ConnectorStore
from connectors.vault import TokenVault

logger = logging.getLogger(__name__)


class BaseConnectorProvider(ABC):
    """Abstract base for all connector providers."""

    metadata: ProviderMetadata

    def __init__(
        self,
        store: ConnectorStore,
        notifier: Notifier,
        vault: TokenVault,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.vault = vault
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
        self.fetcher = AuthenticatedFetcher(
            provider_name=self.metadata.name,
            client=self.client,
            vault=vault,
            store=store,
            notifier=notifier,
            refresh=self.refresh_token,
        )

    # ── Identity ────────────────────────────────────────────────────────

    @property
    def provider_id(self) -> str:
        return self.metadata.id.value

    @property
    def client_id(self) -> str:
        return self.metadata.oauth.client_id or config.client_id_for(self.provider_id) or ""

    @property
    def redirect_uri(self) -> str:
        return f"{config.oauth_redirect_base}/api/v1/connectors/{self.provider_id}/callback"

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str, code_challenge: str) -> str:
        """
        Build the provider's authorization URL.

        Parameters
        ----------
        state : str
            Signed CSRF state.
        code_challenge : str
            PKCE S256 challenge; ignored by providers without PKCE.
        """
        ...

    @abstractmethod
    async def exchange_code(self, code: str, code_verifier: str) -> OAuthResult:
        """Exchange an authorization code. Raises ``ProviderError`` on non-2xx."""
        ...

    @abstractmethod
    async def refresh_token(self, connector: Connector) -> TokenRefreshResult:
        """Obtain a new access token. Raises when refresh is impossible."""
        ...

    @abstractmethod
    async def validate_token(self, token: str) -> bool:
        ...

    @abstractmethod
    async def revoke_access(self, connector: Connector) -> None:
        """Revoke at the provider; silently succeeds where there is no endpoint."""
        ...

    @abstractmethod
    async def get_account_info(self, token: str) -> AccountInfo:
        ...

    # ── Content ─────────────────────────────────────────────────────────

    @abstractmethod
    async def list(self, connector: Connector, options: Optional[ListOptions] = None) -> ListResult:
        ...

    @abstractmethod
    async def list_with_token(self, token: str, options: Optional[ListOptions] = None) -> ListResult:
        """``list`` with a plaintext token, for the window before the connector is persisted."""
        ...

    @abstractmethod
    async def read(self, connector: Connector, external_id: str) -> ContentResult:
        """Read one item. Raises ``ContentTooLargeError`` above ``metadata.max_file_size``."""
        ...

    @abstractmethod
    async def get_changes(self, connector: Connector, cursor: Optional[str]) -> ChangesResult:
        """
        Delta sync.

        ``cursor=None`` starts an initial sync, a non-empty cursor resumes,
        and a returned ``new_cursor == ''`` tells the caller to drop its
        state and start over from ``None``.
        """
        ...

    @abstractmethod
    def normalize_item(self, raw_item: Dict[str, Any]) -> ConnectorItem:
        ...

    # ── Optional capabilities ───────────────────────────────────────────

    async def search(self, connector: Connector, query: str) -> SearchResult:
        return SearchResult(items=[], total_count=0)

    async def initialize(self) -> None:
        pass

    async def dispose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ── Shared helpers ──────────────────────────────────────────────────

    async def get_decrypted_token(self, connector: Connector) -> str:
        return await self.vault.decrypt_access_token(connector)

    async def get_decrypted_refresh_token(self, connector: Connector) -> Optional[str]:
        return await self.vault.decrypt_refresh_token(connector)

    async def fetch_with_auth(self, connector: Connector, url: str, method: str = "GET", **kwargs: Any) -> httpx.Response:
        return await self.fetcher.fetch_with_auth(connector, url, method, **kwargs)

    async def fetch_json(self, connector: Connector, url: str, method: str = "GET", **kwargs: Any) -> Any:
        return await self.fetcher.fetch_json(connector, url, method, **kwargs)

    async def fetch_json_with_raw_token(self, token: str, url: str, method: str = "GET", **kwargs: Any) -> Any:
        return await self.fetcher.fetch_json_with_raw_token(token, url, method, **kwargs)

    async def try_refresh_token(self, connector: Connector) -> Optional[str]:
        return await self.fetcher.try_refresh_token(connector)

    def build_auth_url(self, state: str, code_challenge: str, **extra: str) -> str:
        oauth = self.metadata.oauth
        params: Dict[str, str] = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state,
        }
        if oauth.scopes:
            params["scope"] = " ".join(oauth.scopes)
        if oauth.pkce_required:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params.update(extra)
        return f"{oauth.auth_url}?{urlencode(params)}"

    async def post_token_request(
        self,
        data: Dict[str, str],
        url: Optional[str] = None,
        action: str = "Token exchange",
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """POST a form-encoded token request; raise ``ProviderError`` on non-2xx."""
        response = await self.client.post(url or self.metadata.oauth.token_url, data=data, **kwargs)
        if not response.is_success:
            raise ProviderError(
                response.status_code,
                f"{action} failed: {sanitize_error_message(response.text)}",
            )
        return response.json()

    def ensure_within_size(self, external_id: str, size: Optional[int]) -> None:
        if size is not None and size > self.metadata.max_file_size:
            raise ContentTooLargeError(external_id, size, self.metadata.max_file_size)
