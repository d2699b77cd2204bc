"""Handler for Tunnel and ClusterTunnel CRDs."""

from __future__ import annotations

import hashlib
import json
import os
from typing import Any

import kopf

from ..builders.deployment import create_deployment_from_spec, credentials_secret_name, deployment_name
from ..builders.provider import create_provider_from_spec
from ..constants import (
    ANNOTATION_SPEC_HASH,
    API_GROUP_VERSION,
    KIND_CLUSTER_TUNNEL,
    KIND_DEPLOYMENT,
    KIND_TUNNEL,
    REASON_RECONCILED,
    REASON_SYNC_FAILED,
    STATE_ACTIVE,
)
from ..exceptions import AlreadyExistsError, OperatorError
from ..models import ConfigFragment, ObjectRef, TunnelSettings, resource_namespace
from ..reconcile.finalizers import (
    STEP_DELETE_REMOTE,
    STEP_RELEASE_AUXILIARY,
    DeletionSequence,
    DeletionStep,
    ensure_finalizer,
    should_finalize,
    tolerate_not_found,
)
from ..reconcile.lifecycle import TunnelLifecycle, is_existing_tunnel
from ..reconcile.requests import LifecycleRequests
from ..reconcile.retry import ConflictRetryUpdater
from ..reconcile.sync import ConfigSyncer
from ..store import ObjectStore, get_or_none
from ..utils.conditions import set_synced_condition
from ..utils.errors import sanitize_exception
from ..utils.events import (
    emit_config_synced,
    emit_deletion_pending,
    emit_tunnel_adopted,
    emit_tunnel_created,
    emit_tunnel_deleted,
)
from .base import BaseHandler
from .shared import fetch_object, get_aggregator, get_store

CONFIG_SYNC_INTERVAL_SECONDS = int(os.getenv("CONFIG_SYNC_INTERVAL_SECONDS", "300"))
DELETION_REQUEUE_SECONDS = int(os.getenv("DELETION_REQUEUE_SECONDS", "10"))

STEP_RELEASE_CONFIG = "release-config"


def settings_from_spec(spec: dict[str, Any]) -> TunnelSettings:
    """Tunnel-wide settings declared on a tunnel spec."""
    origin_request: dict[str, Any] = {}
    if spec.get("noTlsVerify"):
        origin_request["noTLSVerify"] = True
    return TunnelSettings(
        fallback_target=spec.get("fallbackTarget") or TunnelSettings().fallback_target,
        warp_routing=bool(spec.get("enableWarpRouting", False)),
        origin_request=origin_request or None,
    )


def spec_hash(deployment: dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(deployment["spec"], sort_keys=True).encode("utf-8")).hexdigest()[:16]


class TunnelHandler(BaseHandler):
    """Handler for Tunnel and ClusterTunnel resources."""

    def validate(self, obj: dict[str, Any]) -> None:
        meta = obj["metadata"]
        spec = obj.get("spec") or {}
        cloudflare = spec.get("cloudflare") or {}
        if not cloudflare.get("secret"):
            self.handle_validation_error(meta, "spec.cloudflare.secret is required")
        if not cloudflare.get("accountId") and not cloudflare.get("accountName"):
            self.handle_validation_error(meta, "spec.cloudflare.accountId or spec.cloudflare.accountName is required")

        new_tunnel = spec.get("newTunnel")
        existing_tunnel = spec.get("existingTunnel")
        if new_tunnel and existing_tunnel:
            self.handle_validation_error(meta, "newTunnel and existingTunnel are mutually exclusive")
        if not new_tunnel and not existing_tunnel:
            self.handle_validation_error(meta, "one of newTunnel or existingTunnel is required")
        if new_tunnel and not new_tunnel.get("name"):
            self.handle_validation_error(meta, "newTunnel.name is required")
        if existing_tunnel and not existing_tunnel.get("id") and not existing_tunnel.get("name"):
            self.handle_validation_error(meta, "existingTunnel requires an id or a name")

    def reconcile(self, store: ObjectStore, obj: dict[str, Any]) -> None:
        """Reconcile a Tunnel or ClusterTunnel resource."""
        meta = obj["metadata"]
        self.validate(obj)

        updater = ConflictRetryUpdater(store)
        obj, added = ensure_finalizer(updater, obj)
        if added:
            self.log_info(meta, "Added finalizer", reason="FinalizerAdded")

        provider = create_provider_from_spec(store, obj)
        requests = LifecycleRequests(store, updater, resource_namespace(obj))
        lifecycle = TunnelLifecycle(store, updater, provider, requests)

        outcome = lifecycle.ensure(obj)
        obj = outcome.obj
        tunnel_id = outcome.tunnel_id
        if outcome.created:
            emit_tunnel_created(obj, tunnel_id)
            self.log_info(meta, f"Created tunnel {tunnel_id}", reason="TunnelCreated", tunnel_id=tunnel_id)
        elif outcome.adopted:
            emit_tunnel_adopted(obj, tunnel_id)
            self.log_info(meta, f"Adopted tunnel {tunnel_id}", reason="TunnelAdopted", tunnel_id=tunnel_id)

        # Credentials are durable at this point, the connector may reference them
        self.apply_deployment(store, updater, obj, tunnel_id)

        source = ObjectRef.from_object(obj)
        aggregator = get_aggregator(store, updater)
        aggregator.register_fragment(
            tunnel_id,
            source,
            ConfigFragment(source=source, generation=meta.get("generation", 0), settings=settings_from_spec(obj["spec"])),
            account_id=provider.account_id,
            credentials_ref={"name": credentials_secret_name(obj), "namespace": resource_namespace(obj)},
        )

        generation = meta.get("generation")
        try:
            result = ConfigSyncer(aggregator).sync(tunnel_id, provider)
        except OperatorError as e:
            # Tunnel stays usable, the sync is retried on the next pass
            message = sanitize_exception(e)
            self.write_conditions(
                updater,
                obj,
                lambda c: set_synced_condition(c, False, REASON_SYNC_FAILED, message, generation),
            )
            raise
        if result.applied:
            emit_config_synced(obj, tunnel_id, result.version)
        synced_message = f"Configuration version {result.version} applied"

        self.write_status(
            updater,
            obj,
            STATE_ACTIVE,
            True,
            REASON_RECONCILED,
            f"Tunnel {tunnel_id} is active",
            condition_fn=lambda c: set_synced_condition(c, True, REASON_RECONCILED, synced_message, generation),
        )

    def apply_deployment(
        self,
        store: ObjectStore,
        updater: ConflictRetryUpdater,
        obj: dict[str, Any],
        tunnel_id: str,
    ) -> dict[str, Any]:
        """Create or update the cloudflared connector Deployment."""
        desired = create_deployment_from_spec(obj, tunnel_id)
        desired_hash = spec_hash(desired)
        desired["metadata"]["annotations"] = {ANNOTATION_SPEC_HASH: desired_hash}

        existing = get_or_none(store, KIND_DEPLOYMENT, resource_namespace(obj), deployment_name(obj))
        if existing is None:
            try:
                return store.create(desired)
            except AlreadyExistsError:
                existing = store.get(KIND_DEPLOYMENT, resource_namespace(obj), deployment_name(obj))

        def mutate(candidate: dict[str, Any]) -> bool:
            annotations = candidate["metadata"].get("annotations") or {}
            if annotations.get(ANNOTATION_SPEC_HASH) == desired_hash:
                return False
            candidate["metadata"]["annotations"] = {**annotations, ANNOTATION_SPEC_HASH: desired_hash}
            candidate["metadata"]["labels"] = {**(candidate["metadata"].get("labels") or {}), **desired["metadata"]["labels"]}
            candidate["spec"] = desired["spec"]
            return True

        return updater.apply(existing, mutate)

    def delete(self, store: ObjectStore, obj: dict[str, Any]) -> None:
        """Run the next eligible deletion steps of a Tunnel or ClusterTunnel."""
        meta = obj["metadata"]
        if not should_finalize(obj):
            return

        updater = ConflictRetryUpdater(store)
        obj = self.mark_deleting(updater, obj)
        tunnel_id = obj.get("status", {}).get("tunnelId")

        provider = create_provider_from_spec(store, obj)
        requests = LifecycleRequests(store, updater, resource_namespace(obj))
        lifecycle = TunnelLifecycle(store, updater, provider, requests)
        aggregator = get_aggregator(store, updater)

        steps = lifecycle.deletion_steps(obj)
        release_config = DeletionStep(
            STEP_RELEASE_CONFIG,
            tolerate_not_found(lambda: aggregator.delete(tunnel_id)),
            lambda: not tunnel_id or aggregator.get(tunnel_id) is None,
        )
        index = next(i for i, step in enumerate(steps) if step.name == STEP_RELEASE_AUXILIARY)
        steps.insert(index, release_config)

        progress = DeletionSequence(updater).run(obj, steps)
        if STEP_DELETE_REMOTE in progress.completed and tunnel_id and not is_existing_tunnel(obj):
            emit_tunnel_deleted(obj, tunnel_id)
        if not progress.done:
            emit_deletion_pending(obj, progress.pending_step)
            raise kopf.TemporaryError(
                f"Deletion step {progress.pending_step} in progress", delay=DELETION_REQUEUE_SECONDS
            )
        self.log_info(meta, "Deletion complete", event="deletion", reason="Deleted", steps=progress.completed)

    def resync(self, store: ObjectStore, obj: dict[str, Any]) -> None:
        """Re-apply the aggregated configuration to repair remote drift."""
        tunnel_id = obj.get("status", {}).get("tunnelId")
        if not tunnel_id or should_finalize(obj) or obj.get("status", {}).get("state") != STATE_ACTIVE:
            return
        updater = ConflictRetryUpdater(store)
        provider = create_provider_from_spec(store, obj)
        result = ConfigSyncer(get_aggregator(store, updater)).sync(tunnel_id, provider, force=True)
        if result.applied:
            self.log_info(obj["metadata"], f"Re-applied configuration to tunnel {tunnel_id}", reason="DriftSync")


# Global handler instances
_tunnel_handler = TunnelHandler(KIND_TUNNEL)
_cluster_tunnel_handler = TunnelHandler(KIND_CLUSTER_TUNNEL)


def _reconcile(handler: TunnelHandler, meta: dict[str, Any]) -> None:
    store = get_store()
    obj = fetch_object(store, handler.kind, meta)
    if obj is None:
        return
    handler.run(store, obj, lambda: handler.reconcile(store, obj))


def _delete(handler: TunnelHandler, meta: dict[str, Any]) -> None:
    store = get_store()
    obj = fetch_object(store, handler.kind, meta)
    if obj is None:
        return
    try:
        handler.delete(store, obj)
    except OperatorError as e:
        # Deletion never gives up, a fixed secret or network lets it finish
        handler.log_error(meta, "Deletion failed", error=e, reason="DeletionFailed")
        raise kopf.TemporaryError(sanitize_exception(e), delay=DELETION_REQUEUE_SECONDS) from e


def _resync(handler: TunnelHandler, meta: dict[str, Any]) -> None:
    store = get_store()
    obj = fetch_object(store, handler.kind, meta)
    if obj is None:
        return
    try:
        handler.resync(store, obj)
    except OperatorError as e:
        handler.log_warning(meta, f"Drift sync failed: {sanitize_exception(e)}", reason="DriftSyncFailed")


@kopf.on.create(API_GROUP_VERSION, KIND_TUNNEL)
@kopf.on.update(API_GROUP_VERSION, KIND_TUNNEL)
@kopf.on.resume(API_GROUP_VERSION, KIND_TUNNEL)
def handle_tunnel(meta: dict[str, Any], **kwargs: Any) -> None:
    """Handle Tunnel resource reconciliation."""
    _reconcile(_tunnel_handler, meta)


@kopf.on.delete(API_GROUP_VERSION, KIND_TUNNEL, optional=True)
def handle_tunnel_delete(meta: dict[str, Any], **kwargs: Any) -> None:
    """Handle Tunnel resource deletion."""
    _delete(_tunnel_handler, meta)


@kopf.timer(API_GROUP_VERSION, KIND_TUNNEL, interval=CONFIG_SYNC_INTERVAL_SECONDS, idle=CONFIG_SYNC_INTERVAL_SECONDS)
def handle_tunnel_resync(meta: dict[str, Any], **kwargs: Any) -> None:
    """Periodically re-apply Tunnel configuration."""
    _resync(_tunnel_handler, meta)


@kopf.on.create(API_GROUP_VERSION, KIND_CLUSTER_TUNNEL)
@kopf.on.update(API_GROUP_VERSION, KIND_CLUSTER_TUNNEL)
@kopf.on.resume(API_GROUP_VERSION, KIND_CLUSTER_TUNNEL)
def handle_cluster_tunnel(meta: dict[str, Any], **kwargs: Any) -> None:
    """Handle ClusterTunnel resource reconciliation."""
    _reconcile(_cluster_tunnel_handler, meta)


@kopf.on.delete(API_GROUP_VERSION, KIND_CLUSTER_TUNNEL, optional=True)
def handle_cluster_tunnel_delete(meta: dict[str, Any], **kwargs: Any) -> None:
    """Handle ClusterTunnel resource deletion."""
    _delete(_cluster_tunnel_handler, meta)


@kopf.timer(
    API_GROUP_VERSION, KIND_CLUSTER_TUNNEL, interval=CONFIG_SYNC_INTERVAL_SECONDS, idle=CONFIG_SYNC_INTERVAL_SECONDS
)
def handle_cluster_tunnel_resync(meta: dict[str, Any], **kwargs: Any) -> None:
    """Periodically re-apply ClusterTunnel configuration."""
    _resync(_cluster_tunnel_handler, meta)
