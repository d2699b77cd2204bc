"""Error sanitization utilities to prevent credential leakage."""

import re


# Patterns that might expose sensitive information
SENSITIVE_PATTERNS = [
    r"tunnel[_\s]?secret\"?[:=\s]+\"?([A-Za-z0-9/+=]+)",
    r"TunnelSecret\"?[:=\s]+\"?([A-Za-z0-9/+=]+)",
    r"bearer\s+([A-Za-z0-9\-_\.]+)",
    r"api[_\s]?token[:=\s]+([A-Za-z0-9\-_]+)",
    r"api[_\s]?key[:=\s]+([A-Za-z0-9\-_]+)",
    r"x-auth-key[:=\s]+([A-Za-z0-9\-_]+)",
    r"tunnel[_\s]?token[:=\s]+([A-Za-z0-9\-_\.=]+)",
]

# Fields to redact completely
SENSITIVE_FIELDS = {
    "tunnel_secret",
    "tunnelsecret",
    "secret",
    "credentials",
    "token",
    "password",
    "api_key",
}


def sanitize_error_message(message: str) -> str:
    """Sanitize error message to remove sensitive information.

    Args:
        message: Original error message

    Returns:
        Sanitized error message with sensitive data redacted
    """
    sanitized = message

    for pattern in SENSITIVE_PATTERNS:
        sanitized = re.sub(
            pattern,
            lambda match: match.group(0).replace(match.group(1), "[REDACTED]"),
            sanitized,
            flags=re.IGNORECASE,
        )

    for field in SENSITIVE_FIELDS:
        sanitized = re.sub(
            rf"\b{field}[:=\s]+(?!\[REDACTED\])([^\s,;\)\]]+)",
            f"{field}: [REDACTED]",
            sanitized,
            flags=re.IGNORECASE,
        )

    return sanitized


def sanitize_exception(error: Exception) -> str:
    """Sanitize exception message.

    Args:
        error: Exception object

    Returns:
        Sanitized error message
    """
    return sanitize_error_message(str(error))

