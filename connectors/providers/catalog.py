"""
Static metadata for every implemented provider.

Kept apart from the provider modules so the registry can describe all
providers without importing their implementations.
"""

from __future__ import annotations

from typing import Dict

from config.settings import config
from connectors.models import (
    Capabilities,
    OAuthConfig,
    ProviderId,
    ProviderMetadata,
    RateLimit,
)

# ── OAuth endpoints ──────────────────────────────────────────────────────

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
MICROSOFT_AUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
DROPBOX_AUTH_URL = "https://www.dropbox.com/oauth2/authorize"
NOTION_AUTH_URL = "https://api.notion.com/v1/oauth/authorize"
SLACK_AUTH_URL = "https://slack.com/oauth/v2/authorize"


def _bridge(path: str) -> str:
    return f"{config.bridge_url}{path}"


_GOOGLE_IDENTITY_SCOPES = [
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]


GMAIL = ProviderMetadata(
    id=ProviderId.GMAIL,
    name="Gmail",
    description="Sync emails from Gmail",
    color="#EA4335",
    folder_picker="tree",
    capabilities=Capabilities(read=True, search=True),
    supported_types=["message/rfc822"],
    rate_limit=RateLimit(requests=250, window_seconds=1),
    oauth=OAuthConfig(
        auth_url=GOOGLE_AUTH_URL,
        token_url=_bridge("/api/google/token"),
        scopes=_GOOGLE_IDENTITY_SCOPES + ["https://www.googleapis.com/auth/gmail.readonly"],
    ),
)

GOOGLE_DRIVE = ProviderMetadata(
    id=ProviderId.GOOGLE_DRIVE,
    name="Google Drive",
    description="Sync files and Google Docs from Drive",
    color="#4285F4",
    folder_picker="tree",
    capabilities=Capabilities(read=True, search=True),
    rate_limit=RateLimit(requests=1000, window_seconds=100),
    oauth=OAuthConfig(
        auth_url=GOOGLE_AUTH_URL,
        token_url=_bridge("/api/google/token"),
        scopes=_GOOGLE_IDENTITY_SCOPES + ["https://www.googleapis.com/auth/drive.readonly"],
    ),
)

GOOGLE_CALENDAR = ProviderMetadata(
    id=ProviderId.GOOGLE_CALENDAR,
    name="Google Calendar",
    description="Sync events from Google Calendar",
    color="#1A73E8",
    folder_picker="tree",
    capabilities=Capabilities(read=True, search=True),
    supported_types=["text/calendar"],
    oauth=OAuthConfig(
        auth_url=GOOGLE_AUTH_URL,
        token_url=_bridge("/api/google/token"),
        scopes=_GOOGLE_IDENTITY_SCOPES
        + ["https://www.googleapis.com/auth/calendar.readonly"],
    ),
)

OUTLOOK_MAIL = ProviderMetadata(
    id=ProviderId.OUTLOOK_MAIL,
    name="Outlook Mail",
    description="Sync emails from Microsoft Outlook",
    color="#0078D4",
    folder_picker="tree",
    capabilities=Capabilities(read=True, search=True),
    supported_types=["message/rfc822"],
    oauth=OAuthConfig(
        auth_url=MICROSOFT_AUTH_URL,
        token_url=_bridge("/api/microsoft/oauth2/v2.0/token"),
        scopes=["openid", "profile", "email", "offline_access", "https://graph.microsoft.com/Mail.Read"],
    ),
)

DROPBOX = ProviderMetadata(
    id=ProviderId.DROPBOX,
    name="Dropbox",
    description="Sync files from Dropbox",
    color="#0061FF",
    folder_picker="tree",
    capabilities=Capabilities(read=True, search=True),
    oauth=OAuthConfig(
        auth_url=DROPBOX_AUTH_URL,
        token_url=_bridge("/api/dropbox/oauth2/token"),
        scopes=["files.metadata.read", "files.content.read", "account_info.read"],
    ),
)

NOTION = ProviderMetadata(
    id=ProviderId.NOTION,
    name="Notion",
    description="Sync pages and databases from Notion",
    color="currentColor",
    folder_picker="url-input",
    capabilities=Capabilities(read=True, search=True),
    supported_types=["text/markdown"],
    rate_limit=RateLimit(requests=3, window_seconds=1),
    oauth=OAuthConfig(
        auth_url=NOTION_AUTH_URL,
        token_url=_bridge("/api/notion/oauth/token"),
        scopes=[],
        pkce_required=False,
        use_basic_auth=True,
    ),
)

SLACK = ProviderMetadata(
    id=ProviderId.SLACK,
    name="Slack",
    description="Sync channel conversations from Slack",
    color="#4A154B",
    folder_picker="tree",
    capabilities=Capabilities(read=True, search=False),
    supported_types=["text/markdown"],
    oauth=OAuthConfig(
        auth_url=SLACK_AUTH_URL,
        token_url=_bridge("/api/slack/oauth.v2.access"),
        scopes=["channels:read", "channels:history", "groups:read", "groups:history", "users:read"],
        pkce_required=False,
    ),
)


# id → (metadata, module path, class name)
BUILTIN_PROVIDERS: Dict[ProviderId, tuple] = {
    ProviderId.GMAIL: (GMAIL, "connectors.providers.gmail", "GmailProvider"),
    ProviderId.GOOGLE_DRIVE: (GOOGLE_DRIVE, "connectors.providers.google_drive", "GoogleDriveProvider"),
    ProviderId.GOOGLE_CALENDAR: (GOOGLE_CALENDAR, "connectors.providers.google_calendar", "GoogleCalendarProvider"),
    ProviderId.OUTLOOK_MAIL: (OUTLOOK_MAIL, "connectors.providers.outlook_mail", "OutlookMailProvider"),
    ProviderId.DROPBOX: (DROPBOX, "connectors.providers.dropbox", "DropboxProvider"),
    ProviderId.NOTION: (NOTION, "connectors.providers.notion", "NotionProvider"),
    ProviderId.SLACK: (SLACK, "connectors.providers.slack", "SlackProvider"),
}
