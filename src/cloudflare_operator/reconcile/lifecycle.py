"""Tunnel create-or-adopt lifecycle with once-only credentials.

Cloudflare hands out a tunnel secret only in the response to the create
call. The credentials secret is therefore written before any status field:
once status says a tunnel exists, its credentials are already durable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..builders.deployment import CREDENTIALS_KEY, credentials_secret_name, deployment_name
from ..constants import (
    KIND_DEPLOYMENT,
    KIND_SECRET,
    OPERATION_CREATE,
    OPERATION_DELETE,
    SECRET_FINALIZER,
    STATE_ACTIVE,
    STATE_CREATING,
)
from ..exceptions import AlreadyExistsError, NotFoundError, SecretMaterialLostError, ValidationError
from ..models import ObjectRef, TunnelCredentials, owner_reference, resource_namespace
from ..services.cloudflare.base import TunnelProvider
from ..store import ObjectStore, get_or_none
from ..utils.conditions import advance_state
from ..utils.secrets import build_secret, decode_secret_data, encode_secret_data
from .finalizers import (
    STEP_DELETE_REMOTE,
    STEP_QUIESCE_WORKLOAD,
    STEP_RELEASE_AUXILIARY,
    STEP_RELEASE_DEPENDENTS,
    DeletionStep,
    StepOutcome,
    has_finalizer,
    is_being_deleted,
    release_finalizer,
    tolerate_not_found,
)
from .requests import LifecycleExecutor, LifecycleRequests
from .retry import ConflictRetryUpdater

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIAL_FILE_KEY = "CLOUDFLARE_TUNNEL_CREDENTIAL_FILE"
DEFAULT_CREDENTIAL_SECRET_KEY = "CLOUDFLARE_TUNNEL_CREDENTIAL_SECRET"


class LifecyclePhase(Enum):
    """Lifecycle phase of a tunnel, inferred from persisted state only."""

    UNCONFIGURED = "Unconfigured"
    PENDING_CREATE_OR_ADOPT = "PendingCreateOrAdopt"
    CREATED = "Created"
    SECRETS_PERSISTED = "SecretsPersisted"
    ACTIVE = "Active"
    PENDING_DELETE = "PendingDelete"
    DELETED = "Deleted"


@dataclass
class LifecycleOutcome:
    """Result of ``TunnelLifecycle.ensure``."""

    phase: LifecyclePhase
    tunnel_id: str
    obj: dict[str, Any]
    credentials: TunnelCredentials
    created: bool = False
    adopted: bool = False


def tunnel_name(obj: dict[str, Any]) -> str:
    """Remote tunnel name for a Tunnel or ClusterTunnel."""
    spec = obj.get("spec", {})
    for key in ("newTunnel", "existingTunnel"):
        name = (spec.get(key) or {}).get("name")
        if name:
            return name
    return obj["metadata"]["name"]


def is_existing_tunnel(obj: dict[str, Any]) -> bool:
    return bool(obj.get("spec", {}).get("existingTunnel"))


def infer_phase(
    obj: dict[str, Any] | None,
    credentials_stored: bool,
    request_pending: bool = False,
    request_succeeded: bool = False,
) -> LifecyclePhase:
    """Infer the lifecycle phase from what is currently persisted."""
    if obj is None:
        return LifecyclePhase.DELETED
    if is_being_deleted(obj):
        return LifecyclePhase.PENDING_DELETE
    if credentials_stored:
        if obj.get("status", {}).get("state") == STATE_ACTIVE:
            return LifecyclePhase.ACTIVE
        return LifecyclePhase.SECRETS_PERSISTED
    if request_succeeded:
        return LifecyclePhase.CREATED
    if request_pending:
        return LifecyclePhase.PENDING_CREATE_OR_ADOPT
    return LifecyclePhase.UNCONFIGURED


class TunnelLifecycle:
    """Drives a Tunnel or ClusterTunnel through create-or-adopt and deletion."""

    def __init__(
        self,
        store: ObjectStore,
        updater: ConflictRetryUpdater,
        provider: TunnelProvider,
        requests: LifecycleRequests,
        executor: LifecycleExecutor | None = None,
    ) -> None:
        self.store = store
        self.updater = updater
        self.provider = provider
        self.requests = requests
        self.executor = executor or LifecycleExecutor(provider, requests)

    # Credentials secret

    def stored_credentials(self, obj: dict[str, Any]) -> TunnelCredentials | None:
        """Credentials held by the managed secret, or None when absent or empty."""
        secret = get_or_none(self.store, KIND_SECRET, resource_namespace(obj), credentials_secret_name(obj))
        if secret is None:
            return None
        raw = decode_secret_data(secret).get(CREDENTIALS_KEY)
        if not raw:
            return None
        credentials = TunnelCredentials.from_credentials_file(raw)
        if not credentials.tunnel_id or not credentials.tunnel_secret:
            return None
        return credentials

    def persist_credentials(self, obj: dict[str, Any], credentials: TunnelCredentials) -> dict[str, Any]:
        """Write the credentials secret. Idempotent when the material is unchanged."""
        namespace = resource_namespace(obj)
        name = credentials_secret_name(obj)
        payload = {CREDENTIALS_KEY: credentials.to_credentials_file()}
        secret = build_secret(
            namespace,
            name,
            payload,
            owner_references=[owner_reference(obj)],
            finalizers=[SECRET_FINALIZER],
        )
        try:
            return self.store.create(secret)
        except AlreadyExistsError:
            existing = self.store.get(KIND_SECRET, namespace, name)

        def mutate(candidate: dict[str, Any]) -> bool:
            data = decode_secret_data(candidate)
            finalizers = candidate["metadata"].get("finalizers") or []
            if data.get(CREDENTIALS_KEY) == payload[CREDENTIALS_KEY] and SECRET_FINALIZER in finalizers:
                return False
            data.update(payload)
            candidate["data"] = encode_secret_data(data)
            candidate.pop("stringData", None)
            if SECRET_FINALIZER not in finalizers:
                candidate["metadata"]["finalizers"] = list(finalizers) + [SECRET_FINALIZER]
            return True

        return self.updater.apply(existing, mutate)

    # Create or adopt

    def ensure(self, obj: dict[str, Any]) -> LifecycleOutcome:
        """Make sure the remote tunnel exists and its credentials are stored.

        Raises:
            SecretMaterialLostError: The tunnel exists but its credentials were never stored
            ValidationError: Creation was rejected
        """
        if is_existing_tunnel(obj):
            return self._ensure_existing(obj)

        credentials = self.stored_credentials(obj)
        if credentials is not None:
            obj = self._write_status(obj, credentials)
            return self._outcome(obj, credentials)

        owner = ObjectRef.from_object(obj)
        name = tunnel_name(obj)
        cached = self.requests.observe(owner, OPERATION_CREATE)
        if cached is not None and not cached.succeeded:
            # Retry on the next spec change, not from a stale failure
            self.requests.consume(owner, OPERATION_CREATE)
            raise ValidationError(cached.error or f"Creating tunnel {name} failed")

        try:
            remote_id: str | None = self.provider.get_tunnel_id(name)
        except NotFoundError:
            remote_id = None

        created = False
        adopted = False
        if remote_id is not None:
            if cached is None or cached.credentials is None or cached.credentials.tunnel_id != remote_id:
                raise SecretMaterialLostError(name, remote_id)
            credentials = cached.credentials
            adopted = True
            logger.info(f"Adopting tunnel {name} ({remote_id}) with cached credentials")
        else:
            if cached is not None:
                # Outcome refers to a tunnel that no longer exists
                self.requests.consume(owner, OPERATION_CREATE)
            request = self.requests.submit(owner, OPERATION_CREATE, name)
            result = self.executor.process(request)
            if not result.succeeded:
                self.requests.consume(owner, OPERATION_CREATE)
                raise ValidationError(result.error or f"Creating tunnel {name} failed")
            if result.credentials is None:
                # Someone else created it and we never saw the secret
                raise SecretMaterialLostError(name, result.external_id)
            credentials = result.credentials
            created = True

        self.persist_credentials(obj, credentials)
        self.requests.consume(owner, OPERATION_CREATE)
        obj = self._write_status(obj, credentials)
        return self._outcome(obj, credentials, created=created, adopted=adopted)

    def _ensure_existing(self, obj: dict[str, Any]) -> LifecycleOutcome:
        existing = obj["spec"]["existingTunnel"]
        tunnel_id = existing.get("id")
        if tunnel_id:
            try:
                self.provider.get_tunnel(tunnel_id)
            except NotFoundError:
                tunnel_id = None
        if not tunnel_id:
            name = existing.get("name")
            if not name:
                raise ValidationError("existingTunnel requires an id or a name")
            try:
                tunnel_id = self.provider.get_tunnel_id(name)
            except NotFoundError as e:
                raise ValidationError(f"Existing tunnel {name} not found") from e

        credentials = self._read_user_credentials(obj, tunnel_id)
        self.persist_credentials(obj, credentials)
        obj = self._write_status(obj, credentials)
        return self._outcome(obj, credentials, adopted=True)

    def _read_user_credentials(self, obj: dict[str, Any], tunnel_id: str) -> TunnelCredentials:
        cloudflare = obj["spec"].get("cloudflare", {})
        secret_name = cloudflare.get("secret")
        if not secret_name:
            raise ValidationError("spec.cloudflare.secret is required")
        namespace = resource_namespace(obj)
        try:
            data = decode_secret_data(self.store.get(KIND_SECRET, namespace, secret_name))
        except NotFoundError as e:
            raise ValidationError(f"Secret '{secret_name}' not found in namespace '{namespace}'") from e

        file_key = cloudflare.get(DEFAULT_CREDENTIAL_FILE_KEY, DEFAULT_CREDENTIAL_FILE_KEY)
        secret_key = cloudflare.get(DEFAULT_CREDENTIAL_SECRET_KEY, DEFAULT_CREDENTIAL_SECRET_KEY)
        if data.get(file_key):
            credentials = TunnelCredentials.from_credentials_file(data[file_key])
        elif data.get(secret_key):
            credentials = TunnelCredentials(
                account_tag=self.provider.account_id,
                tunnel_id=tunnel_id,
                tunnel_secret=data[secret_key],
                tunnel_name=tunnel_name(obj),
            )
        else:
            raise ValidationError(f"Secret '{secret_name}' holds neither {file_key} nor {secret_key}")

        if credentials.tunnel_id != tunnel_id:
            raise ValidationError(f"Credentials in '{secret_name}' belong to tunnel {credentials.tunnel_id}")
        return credentials

    def _write_status(self, obj: dict[str, Any], credentials: TunnelCredentials) -> dict[str, Any]:
        fields = {
            "tunnelId": credentials.tunnel_id,
            "tunnelName": credentials.tunnel_name or tunnel_name(obj),
            "accountId": credentials.account_tag or self.provider.account_id,
        }

        def mutate(candidate: dict[str, Any]) -> bool:
            status = candidate.setdefault("status", {})
            state = advance_state(status.get("state"), STATE_CREATING)
            if status.get("state") == state and all(status.get(k) == v for k, v in fields.items()):
                return False
            status.update(fields)
            status["state"] = state
            return True

        return self.updater.apply_status(obj, mutate)

    def _outcome(
        self,
        obj: dict[str, Any],
        credentials: TunnelCredentials,
        created: bool = False,
        adopted: bool = False,
    ) -> LifecycleOutcome:
        return LifecycleOutcome(
            phase=infer_phase(obj, credentials_stored=True),
            tunnel_id=credentials.tunnel_id,
            obj=obj,
            credentials=credentials,
            created=created,
            adopted=adopted,
        )

    # Deletion

    def deletion_steps(self, obj: dict[str, Any]) -> list[DeletionStep]:
        """Ordered deletion steps, each able to observe whether it is already done."""
        namespace = resource_namespace(obj)
        owner = ObjectRef.from_object(obj)
        tunnel_id = obj.get("status", {}).get("tunnelId")
        remote_managed = bool(tunnel_id) and not is_existing_tunnel(obj)

        def workload_quiesced() -> bool:
            deployment = get_or_none(self.store, KIND_DEPLOYMENT, namespace, deployment_name(obj))
            if deployment is None:
                return True
            return deployment.get("spec", {}).get("replicas") == 0 and not deployment.get("status", {}).get(
                "replicas"
            )

        def quiesce_workload() -> StepOutcome:
            deployment = get_or_none(self.store, KIND_DEPLOYMENT, namespace, deployment_name(obj))
            if deployment is None:
                return StepOutcome.COMPLETED

            def scale_down(candidate: dict[str, Any]) -> bool:
                if candidate["spec"].get("replicas") == 0:
                    return False
                candidate["spec"]["replicas"] = 0
                return True

            try:
                self.updater.apply(deployment, scale_down)
            except NotFoundError:
                return StepOutcome.COMPLETED
            # Connectors must be gone before the tunnel can be deleted
            return StepOutcome.COMPLETED if workload_quiesced() else StepOutcome.IN_PROGRESS

        def release_dependents() -> None:
            self.provider.delete_tunnel_dependents(tunnel_id)

        def remote_deleted() -> bool:
            if not remote_managed:
                return True
            request = self.requests.get(owner, OPERATION_DELETE)
            return request is not None and request.is_terminal and request.result is not None and (
                request.result.succeeded
            )

        def delete_remote() -> StepOutcome:
            request = self.requests.submit(owner, OPERATION_DELETE, tunnel_name(obj), external_id=tunnel_id)
            result = self.executor.process(request)
            if not result.succeeded:
                self.requests.consume(owner, OPERATION_DELETE)
                raise ValidationError(result.error or f"Deleting tunnel {tunnel_id} failed")
            logger.info(f"Deleted tunnel {tunnel_id} for {owner}")
            return StepOutcome.COMPLETED

        def auxiliary_released() -> bool:
            secret = get_or_none(self.store, KIND_SECRET, namespace, credentials_secret_name(obj))
            if secret is not None and has_finalizer(secret, SECRET_FINALIZER):
                return False
            return all(self.requests.get(owner, op) is None for op in (OPERATION_CREATE, OPERATION_DELETE))

        def release_auxiliary() -> StepOutcome:
            release_finalizer(
                self.updater, self.store, KIND_SECRET, namespace, credentials_secret_name(obj), SECRET_FINALIZER
            )
            # Requests are only useful while the owner exists
            self.requests.consume(owner, OPERATION_CREATE)
            self.requests.consume(owner, OPERATION_DELETE)
            return StepOutcome.COMPLETED

        return [
            DeletionStep(STEP_QUIESCE_WORKLOAD, quiesce_workload, workload_quiesced),
            DeletionStep(
                STEP_RELEASE_DEPENDENTS,
                tolerate_not_found(release_dependents),
                lambda: not remote_managed or remote_deleted(),
            ),
            DeletionStep(STEP_DELETE_REMOTE, delete_remote, remote_deleted),
            DeletionStep(STEP_RELEASE_AUXILIARY, release_auxiliary, auxiliary_released),
        ]
