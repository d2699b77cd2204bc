"""Utility functions for the Cloudflare Operator."""

from .conditions import (
    advance_state,
    set_ready_condition,
    set_synced_condition,
    update_condition,
)
from .errors import sanitize_error_message, sanitize_exception
from .events import emit_event
from .rate_limit import rate_limit_cloudflare, rate_limit_k8s
from .secrets import build_secret, decode_secret_data, get_secret_value

__all__ = [
    "update_condition",
    "set_ready_condition",
    "set_synced_condition",
    "advance_state",
    "sanitize_error_message",
    "sanitize_exception",
    "emit_event",
    "get_secret_value",
    "build_secret",
    "decode_secret_data",
    "rate_limit_k8s",
    "rate_limit_cloudflare",
]
