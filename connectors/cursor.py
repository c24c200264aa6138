"""
Tagged delta-sync cursors.

Providers reason about cursors as one of three variants and serialize them
to an opaque string at the ``get_changes`` boundary:

* ``InitialCursor``  – still paging through the initial full listing.
  ``reference`` is the steady-state token captured before listing started
  (a history ID, a start page token, a timestamp …) and ``page_token`` is
  the provider's pagination token.  Serialized as
  ``"{reference}:initial:{page_token}"``.
* ``SteadyCursor``   – incremental mode; serialized as the raw token.
* ``InvalidatedCursor`` – the prior cursor is permanently invalid;
  serialized as ``""``.

``None`` (no cursor at all) means "no prior state" and is not a variant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

INITIAL_MARKER = ":initial:"


@dataclass(frozen=True)
class InitialCursor:
    reference: str
    page_token: str


@dataclass(frozen=True)
class SteadyCursor:
    token: str


@dataclass(frozen=True)
class InvalidatedCursor:
    pass


SyncCursor = Union[InitialCursor, SteadyCursor, InvalidatedCursor]


def encode_cursor(cursor: SyncCursor) -> str:
    if isinstance(cursor, InitialCursor):
        return f"{cursor.reference}{INITIAL_MARKER}{cursor.page_token}"
    if isinstance(cursor, SteadyCursor):
        return cursor.token
    return ""


def decode_cursor(raw: Optional[str]) -> Optional[SyncCursor]:
    """Parse an opaque cursor string; ``None`` stays ``None``."""
    if raw is None:
        return None
    if raw == "":
        return InvalidatedCursor()
    if INITIAL_MARKER in raw:
        reference, _, page_token = raw.partition(INITIAL_MARKER)
        return InitialCursor(reference=reference, page_token=page_token)
    return SteadyCursor(token=raw)


def next_initial_cursor(reference: str, page_token: Optional[str]) -> str:
    """Cursor to return after one page of the initial listing."""
    if page_token:
        return encode_cursor(InitialCursor(reference=reference, page_token=page_token))
    return encode_cursor(SteadyCursor(token=reference))
