"""Utilities for managing Kubernetes secrets."""

from __future__ import annotations

import base64
import binascii
from typing import Any

from ..constants import KIND_SECRET, LABEL_MANAGED_BY, MANAGED_BY_VALUE
from ..exceptions import NotFoundError, ValidationError


def encode_secret_data(data: dict[str, str]) -> dict[str, str]:
    """Base64 encode secret values the way the API server stores them."""
    return {k: base64.b64encode(v.encode("utf-8")).decode("utf-8") for k, v in data.items()}


def decode_secret_value(value: str | bytes) -> str:
    """Decode a single secret value.

    Handles both string and bytes (different versions of kubernetes client).
    """
    if isinstance(value, bytes):
        return value.decode("utf-8")
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        # Not base64, assume it's already decoded
        return value


def decode_secret_data(secret: dict[str, Any]) -> dict[str, str]:
    """Read all data from a secret object, decoded."""
    data = {k: decode_secret_value(v) for k, v in (secret.get("data") or {}).items()}
    # stringData is write-only on the server, but fakes and freshly built objects carry it
    data.update(secret.get("stringData") or {})
    return data


def build_secret(
    namespace: str,
    secret_name: str,
    data: dict[str, str],
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    owner_references: list[dict[str, Any]] | None = None,
    finalizers: list[str] | None = None,
) -> dict[str, Any]:
    """Build an Opaque secret object.

    Args:
        namespace: Namespace for the secret
        secret_name: Name of the secret
        data: Secret data (will be base64 encoded)
        labels: Extra labels, merged over the managed-by label
        annotations: Annotations for the secret
        owner_references: Owner references for the secret
        finalizers: Finalizers to set on creation
    """
    metadata: dict[str, Any] = {
        "name": secret_name,
        "namespace": namespace,
        "labels": {LABEL_MANAGED_BY: MANAGED_BY_VALUE, **(labels or {})},
    }
    if annotations:
        metadata["annotations"] = annotations
    if owner_references:
        metadata["ownerReferences"] = owner_references
    if finalizers:
        metadata["finalizers"] = finalizers

    return {
        "apiVersion": "v1",
        "kind": KIND_SECRET,
        "metadata": metadata,
        "type": "Opaque",
        "data": encode_secret_data(data),
    }


def get_secret_value(store: Any, namespace: str, secret_name: str, key: str) -> str:
    """Get a value from a Kubernetes secret.

    Args:
        store: Object store
        namespace: Namespace of the secret
        secret_name: Name of the secret
        key: Key in the secret

    Returns:
        Secret value

    Raises:
        ValidationError: If secret or key not found
    """
    try:
        secret = store.get(KIND_SECRET, namespace, secret_name)
    except NotFoundError as e:
        raise ValidationError(f"Secret '{secret_name}' not found in namespace '{namespace}'") from e

    data = decode_secret_data(secret)
    if key not in data:
        raise ValidationError(f"Key '{key}' not found in secret '{secret_name}'")
    return data[key]
