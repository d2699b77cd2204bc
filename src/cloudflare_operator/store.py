"""Cluster store access with optimistic-concurrency semantics."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from . import metrics
from .constants import (
    API_GROUP,
    API_VERSION,
    FIELD_MANAGER,
    KIND_CLUSTER_TUNNEL,
    KIND_CONFIG_MAP,
    KIND_DEPLOYMENT,
    KIND_SECRET,
    KIND_SERVICE,
    KIND_TUNNEL,
    KIND_TUNNEL_BINDING,
)
from .exceptions import (
    AlreadyExistsError,
    ConflictVersionError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from .utils.rate_limit import rate_limit_k8s

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    """Protocol for whole-object reads and version-checked writes."""

    def get(self, kind: str, namespace: str | None, name: str) -> dict[str, Any]:
        """Read an object including its metadata.resourceVersion."""
        ...

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create an object. Raises AlreadyExistsError on a name collision."""
        ...

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an object. Raises ConflictVersionError on a stale resourceVersion."""
        ...

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the status sub-resource. Raises ConflictVersionError on a stale resourceVersion."""
        ...

    def delete(self, kind: str, namespace: str | None, name: str) -> None:
        """Delete an object. Raises NotFoundError when absent."""
        ...


@dataclass(frozen=True)
class ResourceInfo:
    """How a kind is addressed on the API server."""

    api: str
    plural: str
    namespaced: bool = True
    api_version: str = "v1"


RESOURCES: dict[str, ResourceInfo] = {
    KIND_CONFIG_MAP: ResourceInfo("core", "configmaps"),
    KIND_SECRET: ResourceInfo("core", "secrets"),
    KIND_SERVICE: ResourceInfo("core", "services"),
    KIND_DEPLOYMENT: ResourceInfo("apps", "deployments", api_version="apps/v1"),
    KIND_TUNNEL: ResourceInfo("custom", "tunnels", api_version=f"{API_GROUP}/{API_VERSION}"),
    KIND_CLUSTER_TUNNEL: ResourceInfo(
        "custom", "clustertunnels", namespaced=False, api_version=f"{API_GROUP}/{API_VERSION}"
    ),
    KIND_TUNNEL_BINDING: ResourceInfo("custom", "tunnelbindings", api_version=f"{API_GROUP}/{API_VERSION}"),
}


def translate_api_exception(e: ApiException, operation: str) -> Exception:
    """Map a Kubernetes API error onto the operator error taxonomy."""
    message = f"{operation} failed: {e.status} {e.reason}"
    if e.status == 404:
        return NotFoundError(message)
    if e.status == 409:
        if operation == "create":
            return AlreadyExistsError(message)
        return ConflictVersionError(message)
    if e.status in (400, 422):
        return ValidationError(message)
    return TransientError(message)


class KubernetesStore:
    """ObjectStore backed by the Kubernetes API server.

    Objects are plain dicts in API server JSON form. Every kind is dispatched
    through RESOURCES, never through model type inspection.
    """

    def __init__(
        self,
        api_client: client.ApiClient | None = None,
    ) -> None:
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)

    def _info(self, kind: str) -> ResourceInfo:
        try:
            return RESOURCES[kind]
        except KeyError:
            raise ValidationError(f"Unsupported kind: {kind}") from None

    def _writable(self, kind: str) -> ResourceInfo:
        if kind == KIND_SERVICE:
            raise ValidationError(f"{kind} objects are read-only for the operator")
        return self._info(kind)

    def _to_dict(self, kind: str, result: Any) -> dict[str, Any]:
        if isinstance(result, dict):
            obj = result
        else:
            obj = self.api_client.sanitize_for_serialization(result)
        obj.setdefault("kind", kind)
        obj.setdefault("apiVersion", self._info(kind).api_version)
        return obj

    def _call(self, kind: str, operation: str, fn: Callable[[], Any]) -> Any:
        start_time = time.time()
        try:
            result = rate_limit_k8s(fn)()
            metrics.api_call_total.labels(api_type="k8s", operation=f"{operation}_{kind}", result="success").inc()
            return result
        except ApiException as e:
            metrics.api_call_total.labels(api_type="k8s", operation=f"{operation}_{kind}", result="error").inc()
            if e.status == 429:
                metrics.rate_limit_hits_total.labels(api_type="k8s").inc()
            raise translate_api_exception(e, operation) from e
        finally:
            duration = time.time() - start_time
            metrics.api_call_duration_seconds.labels(api_type="k8s", operation=f"{operation}_{kind}").observe(duration)

    def get(self, kind: str, namespace: str | None, name: str) -> dict[str, Any]:
        info = self._info(kind)
        if info.api == "core" and kind == KIND_CONFIG_MAP:
            fn = lambda: self.core.read_namespaced_config_map(name=name, namespace=namespace)
        elif kind == KIND_SERVICE:
            fn = lambda: self.core.read_namespaced_service(name=name, namespace=namespace)
        elif info.api == "core":
            fn = lambda: self.core.read_namespaced_secret(name=name, namespace=namespace)
        elif info.api == "apps":
            fn = lambda: self.apps.read_namespaced_deployment(name=name, namespace=namespace)
        elif info.namespaced:
            fn = lambda: self.custom.get_namespaced_custom_object(
                group=API_GROUP, version=API_VERSION, namespace=namespace, plural=info.plural, name=name
            )
        else:
            fn = lambda: self.custom.get_cluster_custom_object(
                group=API_GROUP, version=API_VERSION, plural=info.plural, name=name
            )
        return self._to_dict(kind, self._call(kind, "get", fn))

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind = obj["kind"]
        info = self._writable(kind)
        namespace = obj["metadata"].get("namespace")
        if info.api == "core" and kind == KIND_CONFIG_MAP:
            fn = lambda: self.core.create_namespaced_config_map(
                namespace=namespace, body=obj, field_manager=FIELD_MANAGER
            )
        elif info.api == "core":
            fn = lambda: self.core.create_namespaced_secret(namespace=namespace, body=obj, field_manager=FIELD_MANAGER)
        elif info.api == "apps":
            fn = lambda: self.apps.create_namespaced_deployment(
                namespace=namespace, body=obj, field_manager=FIELD_MANAGER
            )
        elif info.namespaced:
            fn = lambda: self.custom.create_namespaced_custom_object(
                group=API_GROUP, version=API_VERSION, namespace=namespace, plural=info.plural, body=obj
            )
        else:
            fn = lambda: self.custom.create_cluster_custom_object(
                group=API_GROUP, version=API_VERSION, plural=info.plural, body=obj
            )
        return self._to_dict(kind, self._call(kind, "create", fn))

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind = obj["kind"]
        info = self._writable(kind)
        name = obj["metadata"]["name"]
        namespace = obj["metadata"].get("namespace")
        if info.api == "core" and kind == KIND_CONFIG_MAP:
            fn = lambda: self.core.replace_namespaced_config_map(
                name=name, namespace=namespace, body=obj, field_manager=FIELD_MANAGER
            )
        elif info.api == "core":
            fn = lambda: self.core.replace_namespaced_secret(
                name=name, namespace=namespace, body=obj, field_manager=FIELD_MANAGER
            )
        elif info.api == "apps":
            fn = lambda: self.apps.replace_namespaced_deployment(
                name=name, namespace=namespace, body=obj, field_manager=FIELD_MANAGER
            )
        elif info.namespaced:
            fn = lambda: self.custom.replace_namespaced_custom_object(
                group=API_GROUP, version=API_VERSION, namespace=namespace, plural=info.plural, name=name, body=obj
            )
        else:
            fn = lambda: self.custom.replace_cluster_custom_object(
                group=API_GROUP, version=API_VERSION, plural=info.plural, name=name, body=obj
            )
        return self._to_dict(kind, self._call(kind, "update", fn))

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        kind = obj["kind"]
        info = self._writable(kind)
        name = obj["metadata"]["name"]
        namespace = obj["metadata"].get("namespace")
        if info.api == "core":
            # ConfigMaps and Secrets have no status sub-resource
            return self.update(obj)
        if info.api == "apps":
            fn = lambda: self.apps.replace_namespaced_deployment_status(name=name, namespace=namespace, body=obj)
        elif info.namespaced:
            fn = lambda: self.custom.replace_namespaced_custom_object_status(
                group=API_GROUP, version=API_VERSION, namespace=namespace, plural=info.plural, name=name, body=obj
            )
        else:
            fn = lambda: self.custom.replace_cluster_custom_object_status(
                group=API_GROUP, version=API_VERSION, plural=info.plural, name=name, body=obj
            )
        return self._to_dict(kind, self._call(kind, "update_status", fn))

    def delete(self, kind: str, namespace: str | None, name: str) -> None:
        info = self._writable(kind)
        if info.api == "core" and kind == KIND_CONFIG_MAP:
            fn = lambda: self.core.delete_namespaced_config_map(name=name, namespace=namespace)
        elif info.api == "core":
            fn = lambda: self.core.delete_namespaced_secret(name=name, namespace=namespace)
        elif info.api == "apps":
            fn = lambda: self.apps.delete_namespaced_deployment(name=name, namespace=namespace)
        elif info.namespaced:
            fn = lambda: self.custom.delete_namespaced_custom_object(
                group=API_GROUP, version=API_VERSION, namespace=namespace, plural=info.plural, name=name
            )
        else:
            fn = lambda: self.custom.delete_cluster_custom_object(
                group=API_GROUP, version=API_VERSION, plural=info.plural, name=name
            )
        self._call(kind, "delete", fn)


def get_or_none(store: ObjectStore, kind: str, namespace: str | None, name: str) -> dict[str, Any] | None:
    """Read an object, returning None when it does not exist."""
    try:
        return store.get(kind, namespace, name)
    except NotFoundError:
        return None


def delete_if_exists(store: ObjectStore, kind: str, namespace: str | None, name: str) -> bool:
    """Delete an object, treating an absent object as already deleted."""
    try:
        store.delete(kind, namespace, name)
        return True
    except NotFoundError:
        return False
