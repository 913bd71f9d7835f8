"""Redact credentials from error messages before they reach spans or logs.

Registry and cloud SDK errors routinely echo request URLs and headers; these
helpers strip anything that looks like a credential.
"""

from __future__ import annotations

import re

_SENSITIVE_KEY_PATTERN = re.compile(
    r"(password|secret|access_token|refresh_token|token|authorization|credential)"
    r"\s*[=:]\s*\S+",
    re.IGNORECASE,
)
_URL_CREDENTIAL_PATTERN = re.compile(
    r"://[^@/\s]+:[^@/\s]+@",
)
_AUTH_SCHEME_PATTERN = re.compile(r"\b(Basic|Bearer)\s+[A-Za-z0-9._~+/=-]{8,}")


def sanitize_error_message(msg: str, max_length: int = 500) -> str:
    """Sanitize an error message by redacting credentials and truncating.

    Strips URL credentials (``://user:pass@host``), ``Basic``/``Bearer``
    header values, and key-value pairs for known sensitive keys.

    Args:
        msg: Raw error message to sanitize.
        max_length: Maximum length of returned message.

    Returns:
        Sanitized and truncated error message.

    Example:
        >>> sanitize_error_message("Failed: password=hunter22 at host")
        'Failed: password=<REDACTED> at host'
    """
    sanitized = _URL_CREDENTIAL_PATTERN.sub("://<REDACTED>@", msg)
    sanitized = _AUTH_SCHEME_PATTERN.sub(lambda m: f"{m.group(1)} <REDACTED>", sanitized)
    sanitized = _SENSITIVE_KEY_PATTERN.sub(
        lambda m: m.group(0).split("=", 1)[0].split(":", 1)[0] + "=<REDACTED>"
        if "=" in m.group(0)
        else m.group(0).split(":", 1)[0] + ": <REDACTED>",
        sanitized,
    )
    return sanitized[:max_length]


__all__ = ["sanitize_error_message"]
