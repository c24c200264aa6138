"""
Application settings loaded from environment variables.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # ── Security Secrets ──────────────────────────────────────────────────
    token_encryption_key: str = ""                       # master secret for encrypting OAuth tokens at rest
    oauth_state_secret: str = "change-me-oauth-state"   # HMAC secret for OAuth CSRF state
    oauth_state_ttl_seconds: int = 600
    pending_auth_ttl_seconds: int = 300                 # how long a started OAuth flow stays valid

    # ── OAuth Connectors ─────────────────────────────────────────────────
    oauth_redirect_base: str = "http://localhost:8000"  # base URL for OAuth callbacks
    bridge_url: str = "http://localhost:8787"           # token-exchange bridge (injects client secrets)
    google_client_id: str = ""
    microsoft_client_id: str = ""
    dropbox_client_id: str = ""
    notion_client_id: str = ""
    slack_client_id: str = ""
    notion_client_secret: str = ""                      # Notion token exchange uses HTTP Basic auth

    # ── HTTP ──────────────────────────────────────────────────────────────
    http_timeout_seconds: float = 30.0

    # ── Sync ──────────────────────────────────────────────────────────────
    sync_max_retries: int = 3
    sync_retry_delay_seconds: float = 5.0
    connector_settings_path: str = "/knowledge/connectors#connector/"  # deep link used in notifications

    # ── Database ─────────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./connectors.db"
    database_echo: bool = False

    # ── Server ───────────────────────────────────────────────────────────
    port: int = 8000
    host: str = "0.0.0.0"
    debug: bool = False
    cors_origins: list = ["*"]

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }

    def client_id_for(self, provider: str) -> Optional[str]:
        """
        Return the OAuth client id configured for *provider*.

        Google services share a single client, as do Microsoft ones.
        """
        mapping = {
            "gmail": self.google_client_id,
            "google-drive": self.google_client_id,
            "google-calendar": self.google_client_id,
            "outlook-mail": self.microsoft_client_id,
            "dropbox": self.dropbox_client_id,
            "notion": self.notion_client_id,
            "slack": self.slack_client_id,
        }
        return mapping.get(provider)


config = Settings()
