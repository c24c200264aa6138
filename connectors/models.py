"""
Pydantic models shared by every connector provider.

Field names are snake_case in Python; ``model_dump(by_alias=True)`` yields
the camelCase wire shape (``externalId``, ``newCursor``, ``hasMore`` …).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Default sync interval in minutes
DEFAULT_SYNC_INTERVAL = 30

# Maximum content size accepted by ``read`` unless a provider overrides it
MAX_SYNC_FILE_SIZE = 10 * 1024 * 1024


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ═══════════════════════════════════════════════════════════════════════════════
# Providers
# ═══════════════════════════════════════════════════════════════════════════════


class ProviderId(str, Enum):
    GOOGLE_DRIVE = "google-drive"
    GMAIL = "gmail"
    GOOGLE_CALENDAR = "google-calendar"
    GOOGLE_CHAT = "google-chat"
    GOOGLE_MEET = "google-meet"
    GOOGLE_TASKS = "google-tasks"
    NOTION = "notion"
    DROPBOX = "dropbox"
    QONTO = "qonto"
    SLACK = "slack"
    OUTLOOK_MAIL = "outlook-mail"
    ONEDRIVE = "onedrive"
    FIGMA = "figma"


# Providers that authenticate against the same OAuth account
_SHARED_ACCOUNT_GROUPS: List[frozenset] = [
    frozenset(
        {
            ProviderId.GOOGLE_DRIVE,
            ProviderId.GMAIL,
            ProviderId.GOOGLE_CALENDAR,
            ProviderId.GOOGLE_CHAT,
            ProviderId.GOOGLE_MEET,
            ProviderId.GOOGLE_TASKS,
        }
    ),
]


def shares_same_account(first: ProviderId, second: ProviderId) -> bool:
    """True when both providers sign in with the same third-party account."""
    if first == second:
        return True
    return any(first in group and second in group for group in _SHARED_ACCOUNT_GROUPS)


def related_providers(provider: ProviderId) -> List[ProviderId]:
    """All providers sharing an account with *provider* (itself included)."""
    for group in _SHARED_ACCOUNT_GROUPS:
        if provider in group:
            return sorted(group, key=lambda p: p.value)
    return [provider]


class Capabilities(_WireModel):
    """Optional operations a provider supports. Callers check these flags."""

    read: bool = True
    search: bool = False
    write: bool = False


class RateLimit(_WireModel):
    requests: int
    window_seconds: int


class OAuthConfig(_WireModel):
    auth_url: str
    token_url: str
    scopes: List[str] = Field(default_factory=list)
    client_id: str = ""
    pkce_required: bool = True
    use_basic_auth: bool = False


class ProviderMetadata(_WireModel):
    """Self-contained description of one provider, registered with its loader."""

    id: ProviderId
    name: str
    description: str = ""
    color: str = "currentColor"
    sync_supported: bool = True
    active: bool = True
    folder_picker: Literal["tree", "url-input"] = "tree"
    capabilities: Capabilities = Field(default_factory=Capabilities)
    supported_types: List[str] = Field(default_factory=lambda: ["*"])
    max_file_size: int = MAX_SYNC_FILE_SIZE
    rate_limit: Optional[RateLimit] = None
    oauth: OAuthConfig


# ═══════════════════════════════════════════════════════════════════════════════
# Connector record
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectorStatus(str, Enum):
    CONNECTED = "connected"
    EXPIRED = "expired"


class Connector(_WireModel):
    """One authenticated link to a provider account."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    provider: ProviderId
    name: str = ""
    status: ConnectorStatus = ConnectorStatus.CONNECTED

    encrypted_token: Optional[str] = None
    encrypted_refresh_token: Optional[str] = None
    token_iv: Optional[str] = None
    refresh_token_iv: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)

    account_id: Optional[str] = None
    account_email: Optional[str] = None
    account_picture: Optional[str] = None

    sync_enabled: bool = True
    sync_folders: Optional[List[str]] = None
    sync_interval: int = DEFAULT_SYNC_INTERVAL

    error_message: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_expired(self) -> bool:
        return self.status == ConnectorStatus.EXPIRED

    @property
    def folder_scope(self) -> Optional[List[str]]:
        """Selected folders/channels, or None when everything is synced."""
        return list(self.sync_folders) if self.sync_folders else None

    def public_view(self) -> Dict[str, Any]:
        """Serialisable view without any token material."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={
                "encrypted_token",
                "encrypted_refresh_token",
                "token_iv",
                "refresh_token_iv",
            },
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Items & operation results
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectorItem(_WireModel):
    """Normalized item emitted by list / read / search / get_changes."""

    external_id: str
    name: str
    type: Literal["file", "folder"] = "file"
    file_type: Optional[Literal["document", "image", "text"]] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None
    path: str = "/"
    parent_external_id: Optional[str] = None
    last_modified: datetime = Field(default_factory=utcnow)
    external_url: Optional[str] = None
    content: Optional[str] = None
    content_hash: Optional[str] = None
    transcript: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ListOptions(_WireModel):
    path: Optional[str] = None
    cursor: Optional[str] = None
    page_size: Optional[int] = None
    filter: Dict[str, Any] = Field(default_factory=dict)


class ListResult(_WireModel):
    items: List[ConnectorItem] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


class ContentResult(_WireModel):
    content: Union[str, bytes]
    mime_type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResult(_WireModel):
    items: List[ConnectorItem] = Field(default_factory=list)
    total_count: Optional[int] = None
    next_cursor: Optional[str] = None


class ChangesResult(_WireModel):
    """
    Result of one ``get_changes`` call.

    ``new_cursor == ''`` is the reserved invalidation signal: the caller must
    discard its incremental state and restart from ``cursor=None``.
    """

    added: List[ConnectorItem] = Field(default_factory=list)
    modified: List[ConnectorItem] = Field(default_factory=list)
    deleted: List[str] = Field(default_factory=list)
    new_cursor: str
    has_more: bool = False

    @classmethod
    def resync(cls) -> "ChangesResult":
        return cls(added=[], modified=[], deleted=[], new_cursor="", has_more=False)

    @property
    def requires_resync(self) -> bool:
        return self.new_cursor == ""


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth
# ═══════════════════════════════════════════════════════════════════════════════


class OAuthResult(_WireModel):
    """Plaintext tokens from a code exchange. Encrypt immediately, never log."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: str = ""
    token_type: str = "Bearer"


class TokenRefreshResult(_WireModel):
    access_token: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None  # set when the provider rotates refresh tokens


class AccountInfo(_WireModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Sync bookkeeping
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectorSyncState(_WireModel):
    connector_id: str
    cursor: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    items_synced: int = 0
    sync_type: Literal["full", "delta"] = "full"
    status: Literal["idle", "syncing", "error"] = "idle"
    error_message: Optional[str] = None


class SyncResult(_WireModel):
    success: bool
    items_synced: int = 0
    items_deleted: int = 0
    errors: List[str] = Field(default_factory=list)
    duration: float = 0.0  # seconds
