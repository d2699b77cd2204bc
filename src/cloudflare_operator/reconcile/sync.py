"""Push aggregated configurations to Cloudflare."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .. import metrics
from ..exceptions import OperatorError
from ..services.cloudflare.base import TunnelProvider
from ..utils.errors import sanitize_exception
from .aggregator import AggregatedConfig, ConfigAggregator

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of a sync attempt."""

    applied: bool
    content_hash: str = ""
    version: int | None = None


def build_payload(config: AggregatedConfig) -> dict[str, Any]:
    """Build the remote tunnel configuration: ordered rules plus the catch-all."""
    settings = config.settings
    ingress: list[dict[str, Any]] = []
    for rule in config.rules:
        entry: dict[str, Any] = {"hostname": rule.hostname, "service": rule.service}
        if rule.path:
            entry["path"] = rule.path
        if rule.origin_request:
            entry["originRequest"] = rule.origin_request
        ingress.append(entry)
    ingress.append({"service": settings.fallback_target})

    payload: dict[str, Any] = {
        "ingress": ingress,
        "warp-routing": {"enabled": settings.warp_routing},
    }
    if settings.origin_request:
        payload["originRequest"] = settings.origin_request
    return payload


class ConfigSyncer:
    """Applies an aggregated configuration when its content changed."""

    def __init__(self, aggregator: ConfigAggregator) -> None:
        self.aggregator = aggregator

    def sync(self, target_id: str, provider: TunnelProvider, force: bool = False) -> SyncResult:
        config = self.aggregator.get(target_id)
        if config is None:
            logger.debug(f"No aggregated config for tunnel {target_id}")
            return SyncResult(applied=False)

        if not force and not config.needs_sync:
            metrics.config_sync_total.labels(result="skipped").inc()
            return SyncResult(applied=False, content_hash=config.content_hash, version=config.config_version)

        # Hash of exactly what is sent, a concurrent merge must not be marked applied
        applied_hash = config.compute_hash()
        payload = build_payload(config)
        try:
            version = provider.set_tunnel_configuration(target_id, payload)
        except OperatorError as e:
            metrics.config_sync_total.labels(result="failed").inc()
            self.aggregator.mark_sync_failed(target_id, sanitize_exception(e))
            raise

        self.aggregator.mark_synced(target_id, applied_hash, version)
        metrics.config_sync_total.labels(result="applied").inc()
        logger.info(f"Applied configuration version {version} to tunnel {target_id}")
        return SyncResult(applied=True, content_hash=applied_hash, version=version)
