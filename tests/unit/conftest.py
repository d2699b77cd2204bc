"""Shared fixtures for unit tests."""

from __future__ import annotations

import copy
import itertools
from typing import Any, Callable
from unittest.mock import patch

import pytest

from cloudflare_operator.constants import API_GROUP_VERSION, FINALIZER, KIND_TUNNEL
from cloudflare_operator.exceptions import (
    AlreadyExistsError,
    ConflictVersionError,
    NotFoundError,
)
from cloudflare_operator.models import CreatedTunnel, TunnelCredentials
from cloudflare_operator.reconcile.retry import ConflictRetryUpdater


class FakeStore:
    """In-memory ObjectStore with resourceVersion checks and finalizer semantics."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self.writes: list[tuple[str, str, str]] = []
        self.conflicts = 0
        self.update_hooks: list[Callable[[dict[str, Any]], None]] = []
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)

    @staticmethod
    def _key(kind: str, namespace: str | None, name: str) -> tuple[str, str | None, str]:
        return kind, namespace or None, name

    def _obj_key(self, obj: dict[str, Any]) -> tuple[str, str | None, str]:
        meta = obj["metadata"]
        return self._key(obj["kind"], meta.get("namespace"), meta["name"])

    def _stamp(self, obj: dict[str, Any]) -> None:
        obj["metadata"]["resourceVersion"] = str(next(self._versions))

    def add(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Seed an object without recording a write."""
        stored = copy.deepcopy(obj)
        stored["metadata"].setdefault("uid", f"uid-{next(self._uids)}")
        self._stamp(stored)
        self.objects[self._obj_key(stored)] = stored
        return copy.deepcopy(stored)

    def touch(self, kind: str, namespace: str | None, name: str, fn: Callable[[dict[str, Any]], None]) -> None:
        """Mutate a stored object as a concurrent writer would."""
        stored = self.objects[self._key(kind, namespace, name)]
        fn(stored)
        self._stamp(stored)

    def get(self, kind: str, namespace: str | None, name: str) -> dict[str, Any]:
        try:
            return copy.deepcopy(self.objects[self._key(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(f"{kind} {name} not found") from None

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = self._obj_key(obj)
        if key in self.objects:
            raise AlreadyExistsError(f"{obj['kind']} {obj['metadata']['name']} already exists")
        self.writes.append(("create", obj["kind"], obj["metadata"]["name"]))
        return self.add(obj)

    def _check_write(self, obj: dict[str, Any]) -> tuple[str, str | None, str]:
        if self.update_hooks:
            self.update_hooks.pop(0)(obj)
        key = self._obj_key(obj)
        if key not in self.objects:
            raise NotFoundError(f"{obj['kind']} {obj['metadata']['name']} not found")
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConflictVersionError("injected conflict")
        current = self.objects[key]["metadata"]["resourceVersion"]
        if obj["metadata"].get("resourceVersion") != current:
            raise ConflictVersionError(f"stale resourceVersion {obj['metadata'].get('resourceVersion')}")
        return key

    def _store(self, key: tuple[str, str | None, str], stored: dict[str, Any]) -> dict[str, Any]:
        self._stamp(stored)
        meta = stored["metadata"]
        if meta.get("deletionTimestamp") and not meta.get("finalizers"):
            del self.objects[key]
        else:
            self.objects[key] = stored
        return copy.deepcopy(stored)

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = self._check_write(obj)
        self.writes.append(("update", obj["kind"], obj["metadata"]["name"]))
        stored = copy.deepcopy(obj)
        if "status" in self.objects[key]:
            stored["status"] = copy.deepcopy(self.objects[key]["status"])
        return self._store(key, stored)

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = self._check_write(obj)
        self.writes.append(("update_status", obj["kind"], obj["metadata"]["name"]))
        stored = copy.deepcopy(self.objects[key])
        stored["status"] = copy.deepcopy(obj.get("status") or {})
        return self._store(key, stored)

    def delete(self, kind: str, namespace: str | None, name: str) -> None:
        key = self._key(kind, namespace, name)
        if key not in self.objects:
            raise NotFoundError(f"{kind} {name} not found")
        self.writes.append(("delete", kind, name))
        stored = self.objects[key]
        if stored["metadata"].get("finalizers"):
            stored["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
            self._stamp(stored)
        else:
            del self.objects[key]

    def exists(self, kind: str, namespace: str | None, name: str) -> bool:
        return self._key(kind, namespace, name) in self.objects

    def writes_of(self, kind: str) -> list[tuple[str, str, str]]:
        return [write for write in self.writes if write[1] == kind]


class FakeProvider:
    """In-memory Cloudflare account."""

    def __init__(self, account_id: str = "account-1") -> None:
        self.account_id = account_id
        self.tunnels: dict[str, dict[str, Any]] = {}
        self.routes: dict[str, list[dict[str, Any]]] = {}
        self.configurations: dict[str, dict[str, Any]] = {}
        self.versions: dict[str, int] = {}
        self.zones = {"example.com": "zone-1"}
        self.dns: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self._ids = itertools.count(1)

    def _call(self, name: str) -> None:
        self.calls.append(name)
        error = self.failures.pop(name, None)
        if error is not None:
            raise error

    def add_tunnel(self, name: str, tunnel_id: str | None = None) -> str:
        tunnel_id = tunnel_id or f"tunnel-{next(self._ids)}"
        self.tunnels[tunnel_id] = {"id": tunnel_id, "name": name}
        return tunnel_id

    def create_tunnel(self, name: str) -> CreatedTunnel:
        self._call("create_tunnel")
        if any(t["name"] == name for t in self.tunnels.values()):
            raise AlreadyExistsError(f"tunnel {name} already exists")
        tunnel_id = self.add_tunnel(name)
        return CreatedTunnel(
            tunnel_id=tunnel_id,
            credentials=TunnelCredentials(
                account_tag=self.account_id,
                tunnel_id=tunnel_id,
                tunnel_secret=f"secret-of-{tunnel_id}",
                tunnel_name=name,
            ),
        )

    def get_tunnel_id(self, name: str) -> str:
        self._call("get_tunnel_id")
        for tunnel in self.tunnels.values():
            if tunnel["name"] == name:
                return tunnel["id"]
        raise NotFoundError(f"Tunnel {name} not found")

    def get_tunnel(self, tunnel_id: str) -> dict[str, Any]:
        self._call("get_tunnel")
        if tunnel_id not in self.tunnels:
            raise NotFoundError(f"Tunnel {tunnel_id} not found")
        return self.tunnels[tunnel_id]

    def delete_tunnel(self, tunnel_id: str) -> None:
        self._call("delete_tunnel")
        if tunnel_id not in self.tunnels:
            raise NotFoundError(f"Tunnel {tunnel_id} not found")
        del self.tunnels[tunnel_id]

    def list_tunnel_dependents(self, tunnel_id: str) -> list[dict[str, Any]]:
        self._call("list_tunnel_dependents")
        return list(self.routes.get(tunnel_id, []))

    def delete_tunnel_dependents(self, tunnel_id: str) -> None:
        self._call("delete_tunnel_dependents")
        if tunnel_id not in self.tunnels:
            raise NotFoundError(f"Tunnel {tunnel_id} not found")
        self.routes.pop(tunnel_id, None)

    def set_tunnel_configuration(self, tunnel_id: str, config: dict[str, Any]) -> int:
        self._call("set_tunnel_configuration")
        self.versions[tunnel_id] = self.versions.get(tunnel_id, 0) + 1
        self.configurations[tunnel_id] = copy.deepcopy(config)
        return self.versions[tunnel_id]

    def find_dns_record(self, zone_id: str, hostname: str) -> dict[str, Any] | None:
        self._call("find_dns_record")
        record = self.dns.get(zone_id, {}).get(hostname)
        return copy.deepcopy(record) if record is not None else None

    def create_dns_record(self, zone_id: str, record: dict[str, Any]) -> dict[str, Any]:
        self._call("create_dns_record")
        stored = {**record, "id": f"record-{next(self._ids)}"}
        self.dns.setdefault(zone_id, {})[record["name"]] = stored
        return copy.deepcopy(stored)

    def update_dns_record(self, zone_id: str, record_id: str, record: dict[str, Any]) -> dict[str, Any]:
        self._call("update_dns_record")
        stored = {**record, "id": record_id}
        self.dns.setdefault(zone_id, {})[record["name"]] = stored
        return copy.deepcopy(stored)

    def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        self._call("delete_dns_record")
        records = self.dns.get(zone_id, {})
        for hostname, record in list(records.items()):
            if record["id"] == record_id:
                del records[hostname]
                return
        raise NotFoundError(f"DNS record {record_id} not found")

    def get_zone_id(self, domain: str) -> str:
        self._call("get_zone_id")
        if domain not in self.zones:
            raise NotFoundError(f"Zone {domain} not found")
        return self.zones[domain]


def make_tunnel(
    name: str = "web",
    namespace: str | None = "default",
    kind: str = KIND_TUNNEL,
    spec: dict[str, Any] | None = None,
    status: dict[str, Any] | None = None,
    finalizers: list[str] | None = None,
    deleting: bool = False,
) -> dict[str, Any]:
    """Build a Tunnel or ClusterTunnel object."""
    metadata: dict[str, Any] = {"name": name, "generation": 1}
    if namespace:
        metadata["namespace"] = namespace
    if finalizers is not None:
        metadata["finalizers"] = finalizers
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        metadata.setdefault("finalizers", [FINALIZER])
    obj: dict[str, Any] = {
        "apiVersion": API_GROUP_VERSION,
        "kind": kind,
        "metadata": metadata,
        "spec": spec
        or {
            "cloudflare": {"secret": "cloudflare-secrets", "accountId": "account-1", "domain": "example.com"},
            "newTunnel": {"name": name},
        },
    }
    if status is not None:
        obj["status"] = status
    return obj


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def updater(store: FakeStore) -> ConflictRetryUpdater:
    return ConflictRetryUpdater(store, max_retries=5, delay=0, sleep=lambda _: None)


@pytest.fixture
def mock_event():
    with patch("cloudflare_operator.utils.events.kopf.event") as event:
        yield event


@pytest.fixture(autouse=True)
def no_rate_limit():
    """Disable client-side rate limiting."""
    with patch("cloudflare_operator.store.rate_limit_k8s", lambda fn: fn), patch(
        "cloudflare_operator.services.cloudflare.client.rate_limit_cloudflare", lambda fn: fn
    ):
        yield
