"""Shared utilities for handlers."""

from __future__ import annotations

from typing import Any

from kubernetes import config

from ..constants import KIND_CLUSTER_TUNNEL, KIND_TUNNEL, OPERATOR_NAMESPACE
from ..exceptions import NotFoundError, TransientError, ValidationError
from ..reconcile.aggregator import ConfigAggregator
from ..reconcile.retry import ConflictRetryUpdater
from ..store import KubernetesStore, ObjectStore

_store: KubernetesStore | None = None


def load_kube_config() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def get_store() -> KubernetesStore:
    """Get the process-wide Kubernetes store.

    Returns:
        KubernetesStore instance
    """
    global _store
    if _store is None:
        load_kube_config()
        _store = KubernetesStore()
    return _store


def get_aggregator(store: ObjectStore, updater: ConflictRetryUpdater) -> ConfigAggregator:
    # Aggregated configs are keyed by tunnel id, one namespace holds them all
    return ConfigAggregator(store, updater, OPERATOR_NAMESPACE)


def fetch_object(store: ObjectStore, kind: str, meta: dict[str, Any]) -> dict[str, Any] | None:
    """Read the latest version of the object a handler was invoked for."""
    try:
        return store.get(kind, meta.get("namespace"), meta["name"])
    except NotFoundError:
        return None


def resolve_tunnel(store: ObjectStore, tunnel_ref: dict[str, Any], namespace: str | None) -> dict[str, Any]:
    """Resolve a tunnelRef to a Tunnel or ClusterTunnel object.

    Raises:
        ValidationError: If the reference is malformed
        TransientError: If the tunnel does not exist yet
    """
    kind = tunnel_ref.get("kind", KIND_TUNNEL)
    name = tunnel_ref.get("name")
    if not name:
        raise ValidationError("tunnelRef.name is required")
    if kind not in (KIND_TUNNEL, KIND_CLUSTER_TUNNEL):
        raise ValidationError(f"tunnelRef.kind must be {KIND_TUNNEL} or {KIND_CLUSTER_TUNNEL}, got {kind}")

    try:
        return store.get(kind, namespace if kind == KIND_TUNNEL else None, name)
    except NotFoundError as e:
        raise TransientError(f"{kind} {name} not found") from e
