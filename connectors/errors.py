"""
Exception hierarchy for the connector framework.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base class for every connector framework error."""


class TokenDecryptionError(ConnectorError):
    """The access token could not be decrypted. Fatal for the call."""

    def __init__(self, connector_id: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to decrypt token for connector '{connector_id}'{detail}")
        self.connector_id = connector_id
        self.__cause__ = cause


class MissingEncryptionMetadataError(ConnectorError):
    """The IV needed to decrypt a token is absent from every location."""

    def __init__(self, connector_id: str, missing_key: str):
        super().__init__(
            f"Missing encryption metadata '{missing_key}' for connector '{connector_id}'"
        )
        self.connector_id = connector_id
        self.missing_key = missing_key


class AuthenticationError(ConnectorError):
    """Authentication failed even after the single refresh + retry."""

    def __init__(self, message: str, status: int = 401):
        super().__init__(message)
        self.status = status


class ProviderError(ConnectorError):
    """Non-2xx response from a provider API. The message is already sanitized."""

    def __init__(self, status: int, message: str):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status


class ContentTooLargeError(ConnectorError):
    def __init__(self, external_id: str, size: int, limit: int):
        super().__init__(
            f"Item '{external_id}' is {size} bytes, above the {limit} byte limit"
        )
        self.external_id = external_id
        self.size = size
        self.limit = limit


class ProviderNotFoundError(ConnectorError):
    def __init__(self, provider: str):
        super().__init__(f"Provider '{provider}' is not registered")
        self.provider = provider


class ProviderLoadError(ConnectorError):
    def __init__(self, provider: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to load provider '{provider}'{detail}")
        self.provider = provider
        self.__cause__ = cause


class ConnectorNotFoundError(ConnectorError):
    def __init__(self, connector_id: str):
        super().__init__(f"Connector '{connector_id}' not found")
        self.connector_id = connector_id


class OAuthStateError(ConnectorError):
    """Invalid, expired or unknown OAuth ``state`` parameter."""
