"""Durable lifecycle requests and their executor.

A lifecycle request records "create or delete remote tunnel X" together with
its terminal outcome. The outcome of a create carries the once-only tunnel
secret, so the request doubles as a cache that survives a crash between the
remote create and the persistence of the credentials secret. Requests are
stored as labelled Opaque Secrets because the outcome may hold secret
material.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from .. import metrics
from ..constants import (
    KIND_SECRET,
    LABEL_LIFECYCLE_OPERATION,
    OPERATION_CREATE,
    OPERATION_DELETE,
    OUTCOME_FAILED,
    OUTCOME_PENDING,
    OUTCOME_SUCCEEDED,
)
from ..exceptions import (
    AlreadyExistsError,
    NotFoundError,
    ValidationError,
    classify,
)
from ..models import LifecycleResult, ObjectRef, TunnelCredentials
from ..services.cloudflare.base import TunnelProvider
from ..store import ObjectStore, delete_if_exists, get_or_none
from ..utils.errors import sanitize_exception
from ..utils.secrets import build_secret, decode_secret_data, encode_secret_data
from .retry import ConflictRetryUpdater

logger = logging.getLogger(__name__)

TERMINAL_OUTCOMES = frozenset({OUTCOME_SUCCEEDED, OUTCOME_FAILED})
MAX_NAME_LENGTH = 63


def request_name(owner: ObjectRef, operation: str) -> str:
    """Deterministic, DNS-1123 compatible name for an owner's request."""
    parts = ["tunnel", operation, owner.kind, owner.namespace or "", owner.name]
    name = re.sub(r"[^a-z0-9-]+", "-", "-".join(p for p in parts if p).lower()).strip("-")
    if len(name) > MAX_NAME_LENGTH:
        digest = hashlib.sha256(str(owner).encode("utf-8")).hexdigest()[:8]
        name = f"{name[:MAX_NAME_LENGTH - 9].rstrip('-')}-{digest}"
    return name


@dataclass
class LifecycleRequest:
    """A persisted lifecycle request."""

    name: str
    namespace: str
    operation: str
    owner: ObjectRef
    resource_name: str
    external_id: str | None = None
    outcome: str = OUTCOME_PENDING
    result: LifecycleResult | None = None
    obj: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome in TERMINAL_OUTCOMES

    @classmethod
    def from_secret(cls, secret: dict[str, Any]) -> LifecycleRequest:
        meta = secret.get("metadata", {})
        data = decode_secret_data(secret)
        outcome = data.get("outcome", OUTCOME_PENDING)
        result = None
        if outcome in TERMINAL_OUTCOMES:
            raw_credentials = data.get("credentials")
            result = LifecycleResult(
                outcome=outcome,
                external_id=data.get("externalId") or None,
                credentials=TunnelCredentials.from_credentials_file(raw_credentials) if raw_credentials else None,
                error_class=data.get("errorClass") or None,
                error=data.get("error") or None,
            )
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace", ""),
            operation=data.get("operation", ""),
            owner=ObjectRef.parse(data["owner"]),
            resource_name=data.get("resourceName", ""),
            external_id=data.get("externalId") or None,
            outcome=outcome,
            result=result,
            obj=secret,
        )


class LifecycleRequests:
    """Store of lifecycle requests, one per (owner, operation)."""

    def __init__(self, store: ObjectStore, updater: ConflictRetryUpdater, namespace: str) -> None:
        self.store = store
        self.updater = updater
        self.namespace = namespace

    def submit(
        self,
        owner: ObjectRef,
        operation: str,
        resource_name: str,
        external_id: str | None = None,
    ) -> LifecycleRequest:
        """Create the request if missing. An existing request is returned unchanged."""
        name = request_name(owner, operation)
        data = {
            "operation": operation,
            "owner": str(owner),
            "resourceName": resource_name,
            "outcome": OUTCOME_PENDING,
        }
        if external_id:
            data["externalId"] = external_id
        secret = build_secret(
            self.namespace,
            name,
            data,
            labels={LABEL_LIFECYCLE_OPERATION: operation},
        )
        try:
            created = self.store.create(secret)
            logger.info(f"Submitted {operation} request {name} for {owner}")
            return LifecycleRequest.from_secret(created)
        except AlreadyExistsError:
            return LifecycleRequest.from_secret(self.store.get(KIND_SECRET, self.namespace, name))

    def get(self, owner: ObjectRef, operation: str) -> LifecycleRequest | None:
        secret = get_or_none(self.store, KIND_SECRET, self.namespace, request_name(owner, operation))
        if secret is None:
            return None
        return LifecycleRequest.from_secret(secret)

    def observe(self, owner: ObjectRef, operation: str) -> LifecycleResult | None:
        """Return the terminal outcome of a request, or None while absent or pending."""
        request = self.get(owner, operation)
        if request is None or not request.is_terminal:
            return None
        return request.result

    def record_outcome(self, request: LifecycleRequest, result: LifecycleResult) -> LifecycleResult:
        """Persist a terminal outcome. The first terminal outcome wins.

        Returns:
            The outcome now persisted, which is the earlier one when another
            writer got there first
        """
        secret = request.obj or self.store.get(KIND_SECRET, request.namespace, request.name)

        def mutate(candidate: dict[str, Any]) -> bool:
            data = decode_secret_data(candidate)
            if data.get("outcome") in TERMINAL_OUTCOMES:
                return False
            data["outcome"] = result.outcome
            if result.external_id:
                data["externalId"] = result.external_id
            if result.credentials is not None:
                data["credentials"] = result.credentials.to_credentials_file()
            if result.error_class:
                data["errorClass"] = result.error_class
            if result.error:
                data["error"] = result.error
            candidate["data"] = encode_secret_data(data)
            candidate.pop("stringData", None)
            return True

        persisted = LifecycleRequest.from_secret(self.updater.apply(secret, mutate))
        return persisted.result if persisted.result is not None else result

    def consume(self, owner: ObjectRef, operation: str) -> bool:
        """Delete an observed request. Returns False when it was already gone."""
        return delete_if_exists(self.store, KIND_SECRET, self.namespace, request_name(owner, operation))


class LifecycleExecutor:
    """Runs lifecycle requests against the Cloudflare provider.

    Transient failures propagate and leave the request pending so the next
    reconcile processes it again. Create must tolerate at-least-once
    invocation, which is why a duplicate name resolves to the existing id.
    """

    def __init__(self, provider: TunnelProvider, requests: LifecycleRequests) -> None:
        self.provider = provider
        self.requests = requests

    def process(self, request: LifecycleRequest) -> LifecycleResult:
        if request.is_terminal and request.result is not None:
            return request.result

        if request.operation == OPERATION_CREATE:
            result = self._create(request)
        elif request.operation == OPERATION_DELETE:
            result = self._delete(request)
        else:
            raise ValidationError(f"Unknown lifecycle operation: {request.operation}")

        metrics.tunnel_lifecycle_total.labels(operation=request.operation, result=result.outcome).inc()
        return self.requests.record_outcome(request, result)

    def _create(self, request: LifecycleRequest) -> LifecycleResult:
        name = request.resource_name
        try:
            tunnel_id = self.provider.get_tunnel_id(name)
            logger.info(f"Tunnel {name} already exists as {tunnel_id}, adopting")
            return LifecycleResult(OUTCOME_SUCCEEDED, external_id=tunnel_id)
        except NotFoundError:
            pass

        try:
            created = self.provider.create_tunnel(name)
        except AlreadyExistsError:
            # A concurrent create won the race
            tunnel_id = self.provider.get_tunnel_id(name)
            logger.info(f"Tunnel {name} created concurrently as {tunnel_id}, adopting")
            return LifecycleResult(OUTCOME_SUCCEEDED, external_id=tunnel_id)
        except ValidationError as e:
            return LifecycleResult(
                OUTCOME_FAILED,
                error_class=classify(e).value,
                error=sanitize_exception(e),
            )
        return LifecycleResult(OUTCOME_SUCCEEDED, external_id=created.tunnel_id, credentials=created.credentials)

    def _delete(self, request: LifecycleRequest) -> LifecycleResult:
        tunnel_id = request.external_id
        if not tunnel_id:
            try:
                tunnel_id = self.provider.get_tunnel_id(request.resource_name)
            except NotFoundError:
                return LifecycleResult(OUTCOME_SUCCEEDED)
        try:
            self.provider.delete_tunnel_dependents(tunnel_id)
            self.provider.delete_tunnel(tunnel_id)
        except NotFoundError:
            logger.info(f"Tunnel {tunnel_id} already deleted")
        except ValidationError as e:
            return LifecycleResult(
                OUTCOME_FAILED,
                external_id=tunnel_id,
                error_class=classify(e).value,
                error=sanitize_exception(e),
            )
        return LifecycleResult(OUTCOME_SUCCEEDED, external_id=tunnel_id)
