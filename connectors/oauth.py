"""
OAuth helpers — PKCE, signed CSRF state, pending authorizations.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from config.settings import config
from connectors.errors import OAuthStateError
from connectors.models import ProviderId

_VERIFIER_LENGTH = 64


# ── PKCE ───────────────────────────────────────────────────────────────


def generate_code_verifier(length: int = _VERIFIER_LENGTH) -> str:
    """Random URL-safe verifier of *length* characters (RFC 7636 allows 43-128)."""
    return secrets.token_urlsafe(length)[:length]


def code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


# ── State token helpers (CSRF protection) ──────────────────────────────


def create_state(provider: str, secret: Optional[str] = None, ttl: Optional[int] = None) -> str:
    """Create an opaque state string encoding the provider, a nonce and an expiry."""
    secret = secret or config.oauth_state_secret
    ttl = ttl if ttl is not None else config.oauth_state_ttl_seconds
    payload = json.dumps(
        {
            "provider": provider,
            "nonce": secrets.token_urlsafe(16),
            "exp": int(time.time()) + ttl,
        }
    )
    raw = payload.encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()[:32]
    return base64.urlsafe_b64encode(raw).decode() + "." + sig


def verify_state(state: str, secret: Optional[str] = None) -> str:
    """Verify a state token and return its provider. Raises ``OAuthStateError``."""
    secret = secret or config.oauth_state_secret
    parts = state.split(".", 1)
    if len(parts) != 2:
        raise OAuthStateError("Invalid OAuth state: bad format")
    try:
        raw = base64.urlsafe_b64decode(parts[0].encode())
    except ValueError as exc:
        raise OAuthStateError("Invalid OAuth state: bad encoding") from exc

    expected_sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()[:32]
    if not hmac.compare_digest(parts[1], expected_sig):
        raise OAuthStateError("Invalid OAuth state: bad signature")

    payload = json.loads(raw)
    if payload.get("exp", 0) < time.time():
        raise OAuthStateError("OAuth state expired")
    return payload["provider"]


# ── Pending authorizations ─────────────────────────────────────────────


@dataclass
class PendingAuthorization:
    provider: ProviderId
    code_verifier: str
    created_at: float = field(default_factory=time.time)


class PendingAuthorizations:
    """
    In-process table of started OAuth flows keyed by state.

    Each entry is consumed exactly once; entries older than the TTL are
    rejected and pruned.
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        self._ttl = ttl_seconds if ttl_seconds is not None else config.pending_auth_ttl_seconds
        self._pending: Dict[str, PendingAuthorization] = {}

    def add(self, state: str, pending: PendingAuthorization) -> None:
        self._prune()
        self._pending[state] = pending

    def pop(self, state: str) -> PendingAuthorization:
        self._prune()
        pending = self._pending.pop(state, None)
        if pending is None:
            raise OAuthStateError("Unknown or expired OAuth flow")
        return pending

    def __len__(self) -> int:
        return len(self._pending)

    def _prune(self) -> None:
        cutoff = time.time() - self._ttl
        for state in [s for s, p in self._pending.items() if p.created_at < cutoff]:
            del self._pending[state]
