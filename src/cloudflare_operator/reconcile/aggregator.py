"""Aggregation of configuration fragments into one document per tunnel.

Several independent reconcilers contribute to a single remote tunnel
configuration: the tunnel itself owns the tunnel-wide settings, bindings
contribute ingress rules. Each target has exactly one ConfigMap named
``tunnel-config-<targetId>`` holding the fragment map in ``config.json``
and sync bookkeeping in separate keys, so bookkeeping never changes the
content hash.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from ..constants import (
    KIND_CONFIG_MAP,
    LABEL_MANAGED_BY,
    LABEL_TUNNEL_ID,
    MANAGED_BY_VALUE,
    SETTINGS_OWNER_KINDS,
    SYNC_ERROR,
    SYNC_PENDING,
    SYNC_SYNCED,
)
from ..exceptions import AlreadyExistsError, NotFoundError
from ..models import ConfigFragment, IngressRule, ObjectRef, TunnelSettings
from ..store import ObjectStore, delete_if_exists, get_or_none
from ..utils.errors import sanitize_error_message
from .retry import ConflictRetryUpdater

logger = logging.getLogger(__name__)

CONFIG_KEY = "config.json"
CONTENT_HASH_KEY = "contentHash"
LAST_APPLIED_HASH_KEY = "lastAppliedHash"
SYNC_STATUS_KEY = "syncStatus"
LAST_SYNC_TIME_KEY = "lastSyncTime"
CONFIG_VERSION_KEY = "configVersion"
SYNC_ERROR_KEY = "syncError"

ConfigMutateFn = Callable[["AggregatedConfig"], bool]


def config_map_name(target_id: str) -> str:
    return f"tunnel-config-{target_id}"


def source_key(source: ObjectRef) -> str:
    return str(source)


def merge_rules(fragments: dict[str, ConfigFragment]) -> list[IngressRule]:
    """Union of all fragment rules ordered by (priority, hostname).

    The union is taken in source-key order and the sort is stable, so the
    result depends on fragment contents only, never on registration order.
    """
    rules: list[IngressRule] = []
    for key in sorted(fragments):
        rules.extend(fragments[key].rules or [])
    return sorted(rules, key=lambda rule: (rule.priority, rule.hostname))


def merge_settings(fragments: dict[str, ConfigFragment]) -> TunnelSettings:
    """Tunnel-wide settings from the first settings-owning fragment."""
    for key in sorted(fragments):
        fragment = fragments[key]
        if fragment.source.kind in SETTINGS_OWNER_KINDS and fragment.settings is not None:
            return fragment.settings
    return TunnelSettings()


def content_hash(account_id: str, settings: TunnelSettings, rules: list[IngressRule]) -> str:
    document = {
        "accountId": account_id,
        "settings": settings.to_dict(),
        "rules": [rule.to_dict() for rule in rules],
    }
    return hashlib.sha256(json.dumps(document, sort_keys=True).encode("utf-8")).hexdigest()


@dataclass
class AggregatedConfig:
    """The aggregated configuration of one tunnel."""

    target_id: str
    account_id: str = ""
    credentials_ref: dict[str, Any] | None = None
    fragments: dict[str, ConfigFragment] = field(default_factory=dict)
    content_hash: str = ""
    last_applied_hash: str = ""
    sync_status: str = SYNC_PENDING
    last_sync_time: str | None = None
    config_version: int = 0
    sync_error: str | None = None

    @property
    def rules(self) -> list[IngressRule]:
        return merge_rules(self.fragments)

    @property
    def settings(self) -> TunnelSettings:
        return merge_settings(self.fragments)

    @property
    def needs_sync(self) -> bool:
        return self.content_hash != self.last_applied_hash

    def compute_hash(self) -> str:
        return content_hash(self.account_id, self.settings, self.rules)

    def document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "targetId": self.target_id,
            "accountId": self.account_id,
            "sources": {key: fragment.to_dict() for key, fragment in sorted(self.fragments.items())},
        }
        if self.credentials_ref:
            doc["credentialsRef"] = self.credentials_ref
        return doc

    def write_to(self, config_map: dict[str, Any]) -> None:
        """Serialize into a ConfigMap object in place."""
        data = config_map.setdefault("data", {}) or {}
        data[CONFIG_KEY] = json.dumps(self.document(), sort_keys=True)
        data[CONTENT_HASH_KEY] = self.content_hash
        data[LAST_APPLIED_HASH_KEY] = self.last_applied_hash
        data[SYNC_STATUS_KEY] = self.sync_status
        data[CONFIG_VERSION_KEY] = str(self.config_version)
        if self.last_sync_time:
            data[LAST_SYNC_TIME_KEY] = self.last_sync_time
        if self.sync_error:
            data[SYNC_ERROR_KEY] = self.sync_error
        else:
            data.pop(SYNC_ERROR_KEY, None)
        config_map["data"] = data

    @classmethod
    def from_config_map(cls, target_id: str, config_map: dict[str, Any]) -> AggregatedConfig:
        data = config_map.get("data") or {}
        doc = json.loads(data.get(CONFIG_KEY) or "{}")
        fragments = {
            key: ConfigFragment.from_dict(value) for key, value in (doc.get("sources") or {}).items()
        }
        return cls(
            target_id=doc.get("targetId", target_id),
            account_id=doc.get("accountId", ""),
            credentials_ref=doc.get("credentialsRef"),
            fragments=fragments,
            content_hash=data.get(CONTENT_HASH_KEY, ""),
            last_applied_hash=data.get(LAST_APPLIED_HASH_KEY, ""),
            sync_status=data.get(SYNC_STATUS_KEY, SYNC_PENDING),
            last_sync_time=data.get(LAST_SYNC_TIME_KEY),
            config_version=int(data.get(CONFIG_VERSION_KEY) or 0),
            sync_error=data.get(SYNC_ERROR_KEY),
        )


class ConfigAggregator:
    """Read-modify-write access to aggregated tunnel configurations."""

    def __init__(self, store: ObjectStore, updater: ConflictRetryUpdater, namespace: str) -> None:
        self.store = store
        self.updater = updater
        self.namespace = namespace

    def get(self, target_id: str) -> AggregatedConfig | None:
        config_map = get_or_none(self.store, KIND_CONFIG_MAP, self.namespace, config_map_name(target_id))
        if config_map is None:
            return None
        return AggregatedConfig.from_config_map(target_id, config_map)

    def register_fragment(
        self,
        target_id: str,
        source: ObjectRef,
        fragment: ConfigFragment,
        account_id: str | None = None,
        credentials_ref: dict[str, Any] | None = None,
    ) -> AggregatedConfig:
        """Merge one source's fragment into the target's configuration.

        Identical content (ignoring the timestamp) issues no write.
        """
        key = source_key(source)
        if fragment.settings is not None and source.kind not in SETTINGS_OWNER_KINDS:
            logger.warning(f"Ignoring tunnel settings contributed by {key}")
            fragment = ConfigFragment(source=source, generation=fragment.generation, rules=fragment.rules)
        else:
            fragment = ConfigFragment(
                source=source,
                generation=fragment.generation,
                settings=fragment.settings,
                rules=fragment.rules,
            )
        fragment.updated_at = datetime.now(timezone.utc).isoformat()

        def mutate(config: AggregatedConfig) -> bool:
            changed = False
            existing = config.fragments.get(key)
            if existing is None or not existing.same_content(fragment):
                config.fragments[key] = fragment
                changed = True
            if account_id and config.account_id != account_id:
                config.account_id = account_id
                changed = True
            if credentials_ref and config.credentials_ref != credentials_ref:
                config.credentials_ref = credentials_ref
                changed = True
            return changed

        return self._update(target_id, mutate, create=True)

    def remove_fragment(self, target_id: str, source: ObjectRef) -> AggregatedConfig | None:
        """Remove only the given source's fragment. Returns None when there is no record."""
        key = source_key(source)

        def mutate(config: AggregatedConfig) -> bool:
            if key not in config.fragments:
                return False
            del config.fragments[key]
            return True

        try:
            return self._update(target_id, mutate, create=False)
        except NotFoundError:
            return None

    def aggregate_rules(self, target_id: str) -> list[IngressRule]:
        config = self.get(target_id)
        return config.rules if config is not None else []

    def aggregate_settings(self, target_id: str) -> TunnelSettings:
        config = self.get(target_id)
        return config.settings if config is not None else TunnelSettings()

    def needs_sync(self, target_id: str) -> bool:
        config = self.get(target_id)
        return config is not None and config.needs_sync

    def mark_synced(self, target_id: str, applied_hash: str, version: int | None = None) -> AggregatedConfig:
        """Record a confirmed remote apply of the content with ``applied_hash``."""
        now = datetime.now(timezone.utc).isoformat()

        def mutate(config: AggregatedConfig) -> bool:
            config.last_applied_hash = applied_hash
            # A merge may have landed while the apply was in flight
            config.sync_status = SYNC_SYNCED if applied_hash == config.content_hash else SYNC_PENDING
            config.last_sync_time = now
            if version is not None:
                config.config_version = version
            config.sync_error = None
            return True

        return self._update(target_id, mutate, create=False, rehash=False)

    def mark_sync_failed(self, target_id: str, message: str) -> AggregatedConfig | None:
        sanitized = sanitize_error_message(message)

        def mutate(config: AggregatedConfig) -> bool:
            if config.sync_status == SYNC_ERROR and config.sync_error == sanitized:
                return False
            config.sync_status = SYNC_ERROR
            config.sync_error = sanitized
            return True

        try:
            return self._update(target_id, mutate, create=False, rehash=False)
        except NotFoundError:
            return None

    def delete(self, target_id: str) -> bool:
        return delete_if_exists(self.store, KIND_CONFIG_MAP, self.namespace, config_map_name(target_id))

    def _update(self, target_id: str, mutate: ConfigMutateFn, create: bool, rehash: bool = True) -> AggregatedConfig:
        name = config_map_name(target_id)
        try:
            config_map = self.store.get(KIND_CONFIG_MAP, self.namespace, name)
        except NotFoundError:
            if not create:
                raise
            created = self._create(target_id, mutate)
            if created is not None:
                return created
            config_map = self.store.get(KIND_CONFIG_MAP, self.namespace, name)

        result: dict[str, AggregatedConfig] = {}

        def apply(candidate: dict[str, Any]) -> bool:
            config = AggregatedConfig.from_config_map(target_id, candidate)
            result["config"] = config
            if not mutate(config):
                return False
            if rehash:
                self._rehash(config)
            config.write_to(candidate)
            return True

        self.updater.apply(config_map, apply)
        return result["config"]

    def _create(self, target_id: str, mutate: ConfigMutateFn) -> AggregatedConfig | None:
        config = AggregatedConfig(target_id=target_id)
        mutate(config)
        self._rehash(config)
        config_map = {
            "apiVersion": "v1",
            "kind": KIND_CONFIG_MAP,
            "metadata": {
                "name": config_map_name(target_id),
                "namespace": self.namespace,
                "labels": {LABEL_MANAGED_BY: MANAGED_BY_VALUE, LABEL_TUNNEL_ID: target_id},
            },
            "data": {},
        }
        config.write_to(config_map)
        try:
            self.store.create(config_map)
        except AlreadyExistsError:
            # Lost the create race, merge into the winner's record
            return None
        logger.info(f"Created aggregated config for tunnel {target_id}")
        return config

    @staticmethod
    def _rehash(config: AggregatedConfig) -> None:
        config.content_hash = config.compute_hash()
        config.sync_status = SYNC_PENDING if config.needs_sync else SYNC_SYNCED
