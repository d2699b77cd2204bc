"""Models shared by the reconciliation engine."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .constants import DEFAULT_FALLBACK_TARGET, DEFAULT_RULE_PRIORITY, OPERATOR_NAMESPACE, OUTCOME_SUCCEEDED


@dataclass(frozen=True)
class ObjectRef:
    """Identity of a Kubernetes object: (kind, namespace, name)."""

    kind: str
    namespace: str | None
    name: str

    def __post_init__(self) -> None:
        # Cluster-scoped objects carry no namespace, "" and None are the same identity
        if not self.namespace:
            object.__setattr__(self, "namespace", None)

    def __str__(self) -> str:
        if self.namespace is None:
            return f"{self.kind}/{self.name}"
        return f"{self.kind}/{self.namespace}/{self.name}"

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ObjectRef:
        meta = obj.get("metadata", {})
        return cls(obj.get("kind", ""), meta.get("namespace"), meta.get("name", ""))

    @classmethod
    def parse(cls, value: str) -> ObjectRef:
        """Parse the string form produced by ``str(ref)``."""
        parts = value.split("/")
        if len(parts) == 2 and all(parts):
            return cls(parts[0], None, parts[1])
        if len(parts) == 3 and all(parts):
            return cls(parts[0], parts[1], parts[2])
        raise ValueError(f"invalid object reference: {value!r}")

    def to_dict(self) -> dict[str, str]:
        data = {"kind": self.kind, "name": self.name}
        if self.namespace:
            data["namespace"] = self.namespace
        return data


@dataclass
class IngressRule:
    """A single hostname/path routing rule contributed to a tunnel."""

    hostname: str
    service: str
    path: str = ""
    origin_request: dict[str, Any] | None = None
    priority: int = DEFAULT_RULE_PRIORITY

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "hostname": self.hostname,
            "service": self.service,
            "priority": self.priority,
        }
        if self.path:
            data["path"] = self.path
        if self.origin_request:
            data["originRequest"] = self.origin_request
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IngressRule:
        return cls(
            hostname=data.get("hostname", ""),
            service=data.get("service", ""),
            path=data.get("path", ""),
            origin_request=data.get("originRequest") or None,
            priority=int(data.get("priority", DEFAULT_RULE_PRIORITY)),
        )


@dataclass
class TunnelSettings:
    """Tunnel-wide routing settings, owned by the tunnel resource itself."""

    fallback_target: str = DEFAULT_FALLBACK_TARGET
    warp_routing: bool = False
    origin_request: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "fallbackTarget": self.fallback_target,
            "warpRouting": self.warp_routing,
        }
        if self.origin_request:
            data["originRequest"] = self.origin_request
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TunnelSettings:
        return cls(
            fallback_target=data.get("fallbackTarget") or DEFAULT_FALLBACK_TARGET,
            warp_routing=bool(data.get("warpRouting", False)),
            origin_request=data.get("originRequest") or None,
        )


@dataclass
class ConfigFragment:
    """One source's contribution to an aggregated tunnel configuration."""

    source: ObjectRef
    generation: int = 0
    settings: TunnelSettings | None = None
    rules: list[IngressRule] | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "source": self.source.to_dict(),
            "generation": self.generation,
        }
        if self.settings is not None:
            data["settings"] = self.settings.to_dict()
        if self.rules is not None:
            data["rules"] = [rule.to_dict() for rule in self.rules]
        if self.updated_at:
            data["updatedAt"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConfigFragment:
        source = data.get("source", {})
        settings = data.get("settings")
        rules = data.get("rules")
        return cls(
            source=ObjectRef(source.get("kind", ""), source.get("namespace"), source.get("name", "")),
            generation=int(data.get("generation", 0)),
            settings=TunnelSettings.from_dict(settings) if settings is not None else None,
            rules=[IngressRule.from_dict(rule) for rule in rules] if rules is not None else None,
            updated_at=data.get("updatedAt"),
        )

    def same_content(self, other: ConfigFragment) -> bool:
        """Compare everything except the update timestamp."""
        mine = self.to_dict()
        theirs = other.to_dict()
        mine.pop("updatedAt", None)
        theirs.pop("updatedAt", None)
        return mine == theirs


@dataclass
class TunnelCredentials:
    """Once-only credentials issued when a tunnel is created."""

    account_tag: str
    tunnel_id: str
    tunnel_secret: str
    tunnel_name: str = ""

    def to_credentials_file(self) -> str:
        """Render the cloudflared credentials.json document."""
        return json.dumps(
            {
                "AccountTag": self.account_tag,
                "TunnelID": self.tunnel_id,
                "TunnelSecret": self.tunnel_secret,
                "TunnelName": self.tunnel_name,
            },
            sort_keys=True,
        )

    @classmethod
    def from_credentials_file(cls, raw: str) -> TunnelCredentials:
        data = json.loads(raw)
        return cls(
            account_tag=data.get("AccountTag", ""),
            tunnel_id=data.get("TunnelID", ""),
            tunnel_secret=data.get("TunnelSecret", ""),
            tunnel_name=data.get("TunnelName", ""),
        )

    def __repr__(self) -> str:
        return (
            f"TunnelCredentials(account_tag={self.account_tag!r}, tunnel_id={self.tunnel_id!r}, "
            f"tunnel_secret='***REDACTED***', tunnel_name={self.tunnel_name!r})"
        )


@dataclass
class CreatedTunnel:
    """Result of a remote tunnel creation."""

    tunnel_id: str
    credentials: TunnelCredentials


@dataclass
class LifecycleResult:
    """Terminal outcome of a lifecycle request."""

    outcome: str
    external_id: str | None = None
    credentials: TunnelCredentials | None = None
    error_class: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCEEDED


def resource_namespace(obj: dict[str, Any]) -> str:
    """Namespace for objects owned by ``obj``; cluster-scoped owners use the operator namespace."""
    return obj.get("metadata", {}).get("namespace") or OPERATOR_NAMESPACE


def owner_reference(obj: dict[str, Any], controller: bool = True) -> dict[str, Any]:
    """Build an ownerReference pointing at ``obj``."""
    meta = obj.get("metadata", {})
    return {
        "apiVersion": obj.get("apiVersion", ""),
        "kind": obj.get("kind", ""),
        "name": meta.get("name", ""),
        "uid": meta.get("uid", ""),
        "controller": controller,
        "blockOwnerDeletion": True,
    }
