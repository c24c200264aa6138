"""
Google OAuth2 flow shared by Gmail, Drive and Calendar.

Plain functions over a provider instance, so each Google provider stays a
direct subclass of ``BaseConnectorProvider``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from connectors.errors import AuthenticationError, ProviderError
from connectors.models import AccountInfo, Connector, OAuthResult, TokenRefreshResult
from connectors.sanitizer import sanitize_error_message

if TYPE_CHECKING:
    from connectors.base import BaseConnectorProvider

logger = logging.getLogger(__name__)

GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


def auth_url(provider: "BaseConnectorProvider", state: str, code_challenge: str) -> str:
    # offline + consent so Google always issues a refresh token
    return provider.build_auth_url(state, code_challenge, access_type="offline", prompt="consent")


async def exchange_code(provider: "BaseConnectorProvider", code: str, code_verifier: str) -> OAuthResult:
    data = await provider.post_token_request(
        {
            "client_id": provider.client_id,
            "code": code,
            "code_verifier": code_verifier,
            "grant_type": "authorization_code",
            "redirect_uri": provider.redirect_uri,
        }
    )
    return OAuthResult(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_in=data.get("expires_in"),
        scope=data.get("scope", ""),
        token_type=data.get("token_type", "Bearer"),
    )


async def refresh_token(provider: "BaseConnectorProvider", connector: Connector) -> TokenRefreshResult:
    refresh = await provider.get_decrypted_refresh_token(connector)
    if not refresh:
        raise AuthenticationError("No refresh token available")
    data = await provider.post_token_request(
        {
            "client_id": provider.client_id,
            "refresh_token": refresh,
            "grant_type": "refresh_token",
        },
        action="Token refresh",
    )
    return TokenRefreshResult(
        access_token=data["access_token"],
        expires_in=data.get("expires_in"),
        refresh_token=data.get("refresh_token"),
    )


async def validate_token(provider: "BaseConnectorProvider", token: str) -> bool:
    response = await provider.client.get(GOOGLE_TOKENINFO_URL, params={"access_token": token})
    return response.is_success


async def revoke_access(provider: "BaseConnectorProvider", connector: Connector) -> None:
    token = await provider.get_decrypted_token(connector)
    response = await provider.client.post(
        GOOGLE_REVOKE_URL,
        params={"token": token},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    if not response.is_success:
        raise ProviderError(
            response.status_code,
            f"Token revocation failed: {sanitize_error_message(response.text)}",
        )


async def get_account_info(provider: "BaseConnectorProvider", token: str) -> AccountInfo:
    data = await provider.fetch_json_with_raw_token(token, GOOGLE_USERINFO_URL)
    return AccountInfo(
        id=data["id"],
        email=data.get("email"),
        name=data.get("name"),
        picture=data.get("picture"),
    )
