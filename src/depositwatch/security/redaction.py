from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

# Key fragments that mark a value as a credential wherever they appear in a key.
SENSITIVE_KEYS = frozenset(
    {
        "apikey",
        "api_key",
        "secret",
        "token",
        "password",
        "authorization",
        "signature",
    }
)

_HEADER_PATTERN = re.compile(r"(?i)(authorization\s*[:=]\s*)(bearer\s+)?[^\s,;]+")
_ENV_ASSIGNMENT_PATTERN = re.compile(r"(?i)(etherscan_api_key\s*[:=]\s*)[^\s,;]+")
_QUERY_PARAM_PATTERN = re.compile(r"(?i)\b(apikey|api_key|token)=([^&\s\"']+)")


def is_sensitive_key(key: object) -> bool:
    normalized = str(key).strip().replace("-", "_").casefold()
    return normalized == "auth" or any(fragment in normalized for fragment in SENSITIVE_KEYS)


def mask_secret(value: str) -> str:
    """Keep just enough of a credential to tell two keys apart in logs."""
    if not value:
        return REDACTED
    if len(value) > 8:
        return value[:4] + "*" * (len(value) - 8) + value[-4:]
    if len(value) <= 2:
        return "*" * len(value)
    return "*" * (len(value) - 2) + value[-2:]


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    redacted = str(text)
    for secret in known_secrets:
        if secret:
            redacted = redacted.replace(secret, mask_secret(secret))
    redacted = _HEADER_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2) or ''}[REDACTED]", redacted)
    redacted = _ENV_ASSIGNMENT_PATTERN.sub(lambda m: f"{m.group(1)}[REDACTED]", redacted)
    return _QUERY_PARAM_PATTERN.sub(lambda m: f"{m.group(1)}={mask_secret(m.group(2))}", redacted)


def sanitize_mapping(data: Mapping[Any, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in data.items():
        name = str(key)
        if is_sensitive_key(name):
            sanitized[name] = REDACTED if value is None else mask_secret(str(value))
        else:
            sanitized[name] = redact_data(value)
    return sanitized


def redact_data(value: Any) -> Any:
    """Recursively scrub credentials from log payloads, CLI output and error text."""
    if isinstance(value, Mapping):
        return sanitize_mapping(value)
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, list | tuple):
        return type(value)(redact_data(item) for item in value)
    return value
