"""Utilities for emitting Kubernetes events."""

from __future__ import annotations

from typing import Any

import kopf

from ..constants import (
    EVENT_REASON_CONFIG_SYNCED,
    EVENT_REASON_DELETION_PENDING,
    EVENT_REASON_OWNERSHIP_CONFLICT,
    EVENT_REASON_RECONCILE_FAILED,
    EVENT_REASON_RECONCILE_STARTED,
    EVENT_REASON_SECRET_MATERIAL_LOST,
    EVENT_REASON_TUNNEL_ADOPTED,
    EVENT_REASON_TUNNEL_CREATED,
    EVENT_REASON_TUNNEL_DELETED,
    EVENT_REASON_VALIDATE_FAILED,
)
from .errors import sanitize_error_message


def emit_event(
    body: dict[str, Any],
    reason: str,
    message: str,
    type_: str = "Normal",
) -> None:
    """Emit a Kubernetes event.

    Messages are sanitized before they leave the operator.

    Args:
        body: Resource object
        reason: Event reason
        message: Event message
        type_: Event type (Normal or Warning)
    """
    kopf.event(
        body,
        reason=reason,
        message=sanitize_error_message(message),
        type=type_,
    )


def emit_reconcile_started(body: dict[str, Any]) -> None:
    """Emit reconcile started event."""
    emit_event(body, EVENT_REASON_RECONCILE_STARTED, "Reconciliation started")


def emit_reconcile_failed(body: dict[str, Any], message: str) -> None:
    """Emit reconcile failed event."""
    emit_event(body, EVENT_REASON_RECONCILE_FAILED, message, type_="Warning")


def emit_validate_failed(body: dict[str, Any], message: str) -> None:
    """Emit validation failed event."""
    emit_event(body, EVENT_REASON_VALIDATE_FAILED, message, type_="Warning")


def emit_tunnel_created(body: dict[str, Any], tunnel_id: str) -> None:
    emit_event(body, EVENT_REASON_TUNNEL_CREATED, f"Tunnel {tunnel_id} created")


def emit_tunnel_adopted(body: dict[str, Any], tunnel_id: str) -> None:
    emit_event(body, EVENT_REASON_TUNNEL_ADOPTED, f"Existing tunnel {tunnel_id} adopted")


def emit_tunnel_deleted(body: dict[str, Any], tunnel_id: str) -> None:
    emit_event(body, EVENT_REASON_TUNNEL_DELETED, f"Tunnel {tunnel_id} deleted")


def emit_config_synced(body: dict[str, Any], tunnel_id: str, version: int | None) -> None:
    emit_event(body, EVENT_REASON_CONFIG_SYNCED, f"Configuration of tunnel {tunnel_id} synced (version {version})")


def emit_ownership_conflict(body: dict[str, Any], message: str) -> None:
    emit_event(body, EVENT_REASON_OWNERSHIP_CONFLICT, message, type_="Warning")


def emit_secret_material_lost(body: dict[str, Any], message: str) -> None:
    emit_event(body, EVENT_REASON_SECRET_MATERIAL_LOST, message, type_="Warning")


def emit_deletion_pending(body: dict[str, Any], step: str) -> None:
    emit_event(body, EVENT_REASON_DELETION_PENDING, f"Waiting for deletion step {step}")
