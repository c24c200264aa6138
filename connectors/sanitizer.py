"""
Error-message sanitizer.

Provider error bodies and exception text can echo back credentials.  Every
message that is logged, persisted on a connector or raised to a caller
goes through ``sanitize_error_message`` first.
"""

from __future__ import annotations

import re
from typing import Any, List, Optional, Tuple

_TRUNCATION_SUFFIX = "… [truncated]"
DEFAULT_MAX_LENGTH = 500

# Order matters: JSON fields and query params first, then specific token
# shapes, then the generic Bearer catch-all.
_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (
        re.compile(r'"(access_token|refresh_token|id_token|client_secret)"\s*:\s*"[^"]*"', re.IGNORECASE),
        r'"\1": "[REDACTED]"',
    ),
    (
        re.compile(r'"(Authorization)"\s*:\s*"[^"]*"', re.IGNORECASE),
        r'"\1": "[REDACTED]"',
    ),
    (
        re.compile(r"\b(access_token|refresh_token|id_token|client_secret|code_verifier|code)=[^&\s\"']+", re.IGNORECASE),
        r"\1=[REDACTED]",
    ),
    (re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"), "[REDACTED_JWT]"),
    (re.compile(r"ya29\.[A-Za-z0-9_\-.]+"), "[REDACTED_GOOGLE_TOKEN]"),
    (re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}"), "[REDACTED_GITHUB_TOKEN]"),
    (re.compile(r"\bxox[abposr]-[A-Za-z0-9-]+"), "[REDACTED_SLACK_TOKEN]"),
    (re.compile(r"\b(secret|ntn)_[A-Za-z0-9]{20,}"), "[REDACTED_NOTION_TOKEN]"),
    (re.compile(r"Bearer\s+[A-Za-z0-9_\-.~+/=]+", re.IGNORECASE), "Bearer [REDACTED]"),
]


def sanitize_error_message(message: Optional[str], max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Redact credentials from *message* and cap its length."""
    if not message:
        return ""

    sanitized = message
    for pattern, replacement in _PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + _TRUNCATION_SUFFIX
    return sanitized


def sanitize_error(error: Any) -> str:
    """Sanitize an exception, a string or any other value."""
    if isinstance(error, BaseException):
        return sanitize_error_message(str(error))
    if isinstance(error, str):
        return sanitize_error_message(error)
    return str(error)
