"""Handler for TunnelBinding CRD."""

from __future__ import annotations

from typing import Any

import kopf

from ..builders.provider import create_provider_from_spec
from ..constants import (
    API_GROUP_VERSION,
    KIND_SERVICE,
    KIND_TUNNEL_BINDING,
    REASON_RECONCILED,
    STATE_ACTIVE,
)
from ..exceptions import NotFoundError, OperatorError, TransientError, ValidationError
from ..models import ConfigFragment, IngressRule, ObjectRef
from ..reconcile.finalizers import (
    STEP_RELEASE_DEPENDENTS,
    DeletionSequence,
    DeletionStep,
    StepOutcome,
    ensure_finalizer,
    should_finalize,
)
from ..reconcile.aggregator import ConfigAggregator, source_key
from ..reconcile.ownership import OwnershipClaim
from ..reconcile.retry import ConflictRetryUpdater
from ..reconcile.sync import ConfigSyncer
from ..services.cloudflare.base import TunnelProvider
from ..store import ObjectStore
from ..utils.errors import sanitize_exception
from ..utils.events import emit_config_synced, emit_deletion_pending
from .base import BaseHandler
from .shared import fetch_object, get_aggregator, get_store, resolve_tunnel
from .tunnel import DELETION_REQUEUE_SECONDS

DNS_COMMENT_TEXT = "managed by cloudflare-operator"
STEP_RELEASE_CONFIG = "release-config"

# Well known ports that are not served over plain HTTP
PORT_PROTOCOLS = {
    22: "ssh",
    139: "smb",
    443: "https",
    445: "smb",
    3389: "rdp",
}


def tunnel_domain(tunnel: dict[str, Any]) -> str:
    domain = (tunnel.get("spec", {}).get("cloudflare") or {}).get("domain")
    if not domain:
        raise ValidationError(f"{tunnel.get('kind')} {tunnel['metadata']['name']} has no spec.cloudflare.domain")
    return domain


def dns_target(tunnel_id: str) -> str:
    return f"{tunnel_id}.cfargotunnel.com"


def subject_hostname(subject: dict[str, Any], domain: str) -> str:
    return (subject.get("spec") or {}).get("fqdn") or f"{subject.get('name')}.{domain}"


def subject_hostnames(obj: dict[str, Any], domain: str) -> list[str]:
    """Hostnames the current subjects map to, without resolving Services."""
    return [subject_hostname(subject, domain) for subject in obj.get("subjects") or [] if subject.get("name")]


class TunnelBindingHandler(BaseHandler):
    """Handler for TunnelBinding resources."""

    def __init__(self):
        """Initialize tunnel binding handler."""
        super().__init__(KIND_TUNNEL_BINDING)

    def build_rules(self, store: ObjectStore, obj: dict[str, Any], domain: str) -> list[IngressRule]:
        """Build one ingress rule per subject."""
        namespace = obj["metadata"]["namespace"]
        rules = []
        for subject in obj.get("subjects") or []:
            name = subject.get("name")
            if not name:
                self.handle_validation_error(obj["metadata"], "subjects[].name is required")
            subject_spec = subject.get("spec") or {}
            hostname = subject_hostname(subject, domain)
            service = subject_spec.get("target") or self._service_target(store, namespace, name, subject_spec)

            origin_request: dict[str, Any] = {}
            if subject_spec.get("noTlsVerify"):
                origin_request["noTLSVerify"] = True
            if subject_spec.get("http2Origin"):
                origin_request["http2Origin"] = True
            if subject_spec.get("proxyAddress"):
                origin_request["proxyAddress"] = subject_spec["proxyAddress"]
                origin_request["proxyPort"] = subject_spec.get("proxyPort", 0)
                origin_request["proxyType"] = subject_spec.get("proxyType", "")

            rule_kwargs: dict[str, Any] = {}
            if "priority" in subject_spec:
                rule_kwargs["priority"] = int(subject_spec["priority"])
            rules.append(
                IngressRule(
                    hostname=hostname,
                    service=service,
                    path=subject_spec.get("path", ""),
                    origin_request=origin_request or None,
                    **rule_kwargs,
                )
            )
        return rules

    def _service_target(self, store: ObjectStore, namespace: str, name: str, subject_spec: dict[str, Any]) -> str:
        try:
            service = store.get(KIND_SERVICE, namespace, name)
        except NotFoundError as e:
            raise TransientError(f"Service {namespace}/{name} not found") from e
        ports = service.get("spec", {}).get("ports") or []
        if not ports:
            raise ValidationError(f"Service {namespace}/{name} exposes no ports")
        port = ports[0]
        port_number = int(port.get("port", 80))
        protocol = subject_spec.get("protocol")
        if not protocol:
            if port.get("protocol", "TCP") == "UDP":
                protocol = "udp"
            else:
                protocol = PORT_PROTOCOLS.get(port_number, "http")
        return f"{protocol}://{name}.{namespace}.svc:{port_number}"

    def upsert_dns(
        self,
        provider: TunnelProvider,
        zone_id: str,
        hostname: str,
        tunnel_id: str,
        claim: OwnershipClaim,
    ) -> None:
        """Point a hostname at the tunnel, refusing records owned by someone else."""
        record = provider.find_dns_record(zone_id, hostname)
        desired = {
            "type": "CNAME",
            "name": hostname,
            "content": dns_target(tunnel_id),
            "proxied": True,
            "ttl": 1,
        }
        if record is None:
            desired["comment"] = claim.claim(None, text=DNS_COMMENT_TEXT, record=hostname)
            provider.create_dns_record(zone_id, desired)
            return

        desired["comment"] = claim.claim(record.get("comment"), record=hostname)
        if all(record.get(key) == value for key, value in desired.items() if key != "ttl"):
            return
        provider.update_dns_record(zone_id, record["id"], desired)

    def release_dns(self, provider: TunnelProvider, zone_id: str, hostname: str, claim: OwnershipClaim) -> bool:
        """Delete a hostname's record if we own it. Foreign and unmarked records stay."""
        record = provider.find_dns_record(zone_id, hostname)
        if record is None or not claim.owns(record.get("comment")):
            return False
        try:
            provider.delete_dns_record(zone_id, record["id"])
        except NotFoundError:
            return False
        return True

    def reconcile(self, store: ObjectStore, obj: dict[str, Any]) -> None:
        """Reconcile TunnelBinding resource."""
        meta = obj["metadata"]
        tunnel_ref = obj.get("tunnelRef") or {}
        if not obj.get("subjects"):
            self.handle_validation_error(meta, "at least one subject is required")

        tunnel = resolve_tunnel(store, tunnel_ref, meta.get("namespace"))
        tunnel_id = tunnel.get("status", {}).get("tunnelId")
        if not tunnel_id:
            raise TransientError(f"{tunnel['kind']} {tunnel['metadata']['name']} has no tunnel yet")

        domain = tunnel_domain(tunnel)
        rules = self.build_rules(store, obj, domain)

        updater = ConflictRetryUpdater(store)
        obj, _ = ensure_finalizer(updater, obj)

        provider = create_provider_from_spec(store, tunnel)
        source = ObjectRef.from_object(obj)
        aggregator = get_aggregator(store, updater)
        aggregator.register_fragment(
            tunnel_id,
            source,
            ConfigFragment(source=source, generation=meta.get("generation", 0), rules=rules),
        )

        previous_tunnel_id = obj.get("status", {}).get("tunnelId")
        if previous_tunnel_id and previous_tunnel_id != tunnel_id:
            self.release_previous_tunnel(store, aggregator, obj, previous_tunnel_id)

        hostnames = [rule.hostname for rule in rules]
        previously_synced = obj.get("status", {}).get("syncedHostnames") or []
        synced = []
        if not tunnel_ref.get("disableDNSUpdates", False):
            claim = OwnershipClaim(source)
            zone_id = provider.get_zone_id(domain)
            try:
                for hostname in hostnames:
                    self.upsert_dns(provider, zone_id, hostname, tunnel_id, claim)
                    synced.append(hostname)
            except Exception:
                # Records claimed so far must stay visible to deletion
                claimed = [h for h in synced if h not in previously_synced]
                if claimed:
                    self.record_synced_hostnames(updater, obj, previously_synced + claimed)
                raise
            for hostname in previously_synced:
                if hostname not in hostnames and self.release_dns(provider, zone_id, hostname, claim):
                    self.log_info(meta, f"Released DNS record {hostname}", reason="DNSReleased", hostname=hostname)

        result = ConfigSyncer(aggregator).sync(tunnel_id, provider)
        if result.applied:
            emit_config_synced(obj, tunnel_id, result.version)

        self.write_status(
            updater,
            obj,
            STATE_ACTIVE,
            True,
            REASON_RECONCILED,
            f"Bound {len(rules)} hostname(s) to tunnel {tunnel_id}",
            {
                "hostnames": ",".join(hostnames),
                "services": [{"hostname": rule.hostname, "target": rule.service} for rule in rules],
                "syncedHostnames": synced,
                "configVersion": result.version or 0,
                "tunnelId": tunnel_id,
                "tunnelRef": {"kind": tunnel["kind"], "name": tunnel["metadata"]["name"]},
            },
        )

    def record_synced_hostnames(
        self, updater: ConflictRetryUpdater, obj: dict[str, Any], hostnames: list[str]
    ) -> dict[str, Any]:
        def mutate(candidate: dict[str, Any]) -> bool:
            status = candidate.setdefault("status", {})
            if status.get("syncedHostnames") == hostnames:
                return False
            status["syncedHostnames"] = list(hostnames)
            return True

        return updater.apply_status(obj, mutate)

    def release_previous_tunnel(
        self,
        store: ObjectStore,
        aggregator: ConfigAggregator,
        obj: dict[str, Any],
        previous_tunnel_id: str,
    ) -> None:
        """Withdraw the rules fragment from the tunnel the binding pointed at before."""
        meta = obj["metadata"]
        source = ObjectRef.from_object(obj)
        config = aggregator.remove_fragment(previous_tunnel_id, source)
        self.log_info(
            meta,
            f"Moved off tunnel {previous_tunnel_id}",
            reason="TunnelChanged",
            previous_tunnel_id=previous_tunnel_id,
        )
        if config is None:
            return

        previous_ref = obj.get("status", {}).get("tunnelRef") or {}
        try:
            previous = resolve_tunnel(store, previous_ref, meta.get("namespace"))
        except (TransientError, ValidationError):
            previous = None
        if previous is None or previous.get("status", {}).get("tunnelId") != previous_tunnel_id:
            # The tunnel's drift timer applies the reduced config
            self.log_warning(
                meta,
                f"Tunnel {previous_tunnel_id} not found, its configuration is left to its next resync",
                reason="TunnelMissing",
            )
            return
        provider = create_provider_from_spec(store, previous)
        ConfigSyncer(aggregator).sync(previous_tunnel_id, provider)

    def delete(self, store: ObjectStore, obj: dict[str, Any]) -> None:
        """Release DNS records and the rules fragment, then the finalizer."""
        meta = obj["metadata"]
        if not should_finalize(obj):
            return

        updater = ConflictRetryUpdater(store)
        obj = self.mark_deleting(updater, obj)
        source = ObjectRef.from_object(obj)
        synced = obj.get("status", {}).get("syncedHostnames") or []
        dns_disabled = (obj.get("tunnelRef") or {}).get("disableDNSUpdates", False)

        try:
            tunnel = resolve_tunnel(store, obj.get("tunnelRef") or {}, meta.get("namespace"))
        except (TransientError, ValidationError):
            tunnel = None
        recorded_id = obj.get("status", {}).get("tunnelId")
        tunnel_id = (tunnel or {}).get("status", {}).get("tunnelId") or recorded_id
        # A retarget that never completed can leave the fragment on the recorded tunnel too
        stale_id = recorded_id if recorded_id and recorded_id != tunnel_id else None
        if tunnel is None:
            self.log_warning(meta, "Tunnel is gone, remote records cannot be released", reason="TunnelMissing")
        provider = create_provider_from_spec(store, tunnel) if tunnel is not None else None
        aggregator = get_aggregator(store, updater)

        def release_records() -> StepOutcome:
            claim = OwnershipClaim(source)
            domain = tunnel_domain(tunnel)
            zone_id = provider.get_zone_id(domain)
            # Records claimed by an interrupted pass are not in syncedHostnames
            hostnames = synced + [h for h in subject_hostnames(obj, domain) if h not in synced]
            for hostname in hostnames:
                self.release_dns(provider, zone_id, hostname, claim)
            return StepOutcome.COMPLETED

        def release_config() -> StepOutcome:
            if stale_id:
                aggregator.remove_fragment(stale_id, source)
            config = aggregator.remove_fragment(tunnel_id, source)
            if config is not None and provider is not None:
                ConfigSyncer(aggregator).sync(tunnel_id, provider)
            return StepOutcome.COMPLETED

        def config_released() -> bool:
            for target_id in (tunnel_id, stale_id):
                if not target_id:
                    continue
                config = aggregator.get(target_id)
                if config is not None and source_key(source) in config.fragments:
                    return False
            return True

        steps = [
            DeletionStep(
                STEP_RELEASE_DEPENDENTS,
                release_records,
                lambda: provider is None or dns_disabled,
            ),
            DeletionStep(STEP_RELEASE_CONFIG, release_config, config_released),
        ]
        progress = DeletionSequence(updater).run(obj, steps)
        if not progress.done:
            emit_deletion_pending(obj, progress.pending_step)
            raise kopf.TemporaryError(
                f"Deletion step {progress.pending_step} in progress", delay=DELETION_REQUEUE_SECONDS
            )
        self.log_info(meta, "Deletion complete", event="deletion", reason="Deleted", steps=progress.completed)


# Global handler instance
_handler = TunnelBindingHandler()


@kopf.on.create(API_GROUP_VERSION, KIND_TUNNEL_BINDING)
@kopf.on.update(API_GROUP_VERSION, KIND_TUNNEL_BINDING)
@kopf.on.resume(API_GROUP_VERSION, KIND_TUNNEL_BINDING)
def handle_tunnel_binding(meta: dict[str, Any], **kwargs: Any) -> None:
    """Handle TunnelBinding resource reconciliation."""
    store = get_store()
    obj = fetch_object(store, KIND_TUNNEL_BINDING, meta)
    if obj is None:
        return
    _handler.run(store, obj, lambda: _handler.reconcile(store, obj))


@kopf.on.delete(API_GROUP_VERSION, KIND_TUNNEL_BINDING, optional=True)
def handle_tunnel_binding_delete(meta: dict[str, Any], **kwargs: Any) -> None:
    """Handle TunnelBinding resource deletion."""
    store = get_store()
    obj = fetch_object(store, KIND_TUNNEL_BINDING, meta)
    if obj is None:
        return
    try:
        _handler.delete(store, obj)
    except OperatorError as e:
        _handler.log_error(meta, "Deletion failed", error=e, reason="DeletionFailed")
        raise kopf.TemporaryError(sanitize_exception(e), delay=DELETION_REQUEUE_SECONDS) from e
