"""Base handler class with common functionality for all CRD handlers."""

from __future__ import annotations

import copy
import logging
import os
import time
from typing import Any, Callable, NoReturn

import kopf

from .. import metrics
from ..constants import REASON_DELETING, STATE_DELETING, STATE_ERROR
from ..exceptions import (
    OperatorError,
    OwnershipConflictError,
    SecretMaterialLostError,
    ValidationError,
    is_terminal,
    reason_for,
)
from ..logging import log_resource_event
from ..reconcile.retry import ConflictRetryUpdater
from ..store import ObjectStore, get_or_none
from ..utils.conditions import advance_state, set_ready_condition
from ..utils.errors import sanitize_exception
from ..utils.events import (
    emit_ownership_conflict,
    emit_reconcile_failed,
    emit_reconcile_started,
    emit_secret_material_lost,
    emit_validate_failed,
)

REQUEUE_DELAY_SECONDS = int(os.getenv("REQUEUE_DELAY_SECONDS", "30"))


class BaseHandler:
    """Base class for all CRD handlers with common functionality."""

    def __init__(self, kind: str):
        """Initialize base handler.

        Args:
            kind: The Kubernetes resource kind (e.g., "Tunnel", "TunnelBinding")
        """
        self.kind = kind
        self.logger = logging.getLogger(__name__)

    def _get_resource_context(self, meta: dict[str, Any]) -> dict[str, Any]:
        """Extract common resource context from metadata.

        Args:
            meta: Kubernetes resource metadata

        Returns:
            Dictionary with resource context fields
        """
        return {
            "name": meta.get("name", "unknown"),
            "namespace": meta.get("namespace") or "",
            "uid": meta.get("uid", "unknown"),
        }

    def _log(self, level: int, meta: dict[str, Any], message: str, event: str, reason: str, **kwargs: Any) -> None:
        ctx = self._get_resource_context(meta)
        log_resource_event(
            self.logger,
            controller="cloudflare-operator",
            resource_kind=self.kind,
            resource_name=ctx["name"],
            namespace=ctx["namespace"],
            uid=ctx["uid"],
            event=event,
            reason=reason,
            message=message,
            level=level,
            **kwargs,
        )

    def log_info(
        self,
        meta: dict[str, Any],
        message: str,
        event: str = "info",
        reason: str = "Info",
        **kwargs: Any,
    ) -> None:
        """Log an info-level structured log message."""
        self._log(logging.INFO, meta, message, event, reason, **kwargs)

    def log_warning(
        self,
        meta: dict[str, Any],
        message: str,
        event: str = "warning",
        reason: str = "Warning",
        **kwargs: Any,
    ) -> None:
        """Log a warning-level structured log message."""
        self._log(logging.WARNING, meta, message, event, reason, **kwargs)

    def log_error(
        self,
        meta: dict[str, Any],
        message: str,
        error: Exception | None = None,
        event: str = "error",
        reason: str = "Error",
        **kwargs: Any,
    ) -> None:
        """Log an error-level structured log message.

        Args:
            meta: Kubernetes resource metadata
            message: Log message
            error: Optional exception to include sanitized error details
            event: Event type (default: "error")
            reason: Reason for the event (default: "Error")
            **kwargs: Additional fields to include in the log
        """
        log_data = kwargs.copy()
        if error is not None:
            log_data["error"] = sanitize_exception(error)
            log_data["error_type"] = type(error).__name__
        self._log(logging.ERROR, meta, message, event, reason, **log_data)

    def handle_validation_error(self, meta: dict[str, Any], error_msg: str) -> NoReturn:
        """Handle validation error consistently.

        Raises:
            ValidationError: Always raises with the error message
        """
        self.log_error(meta, error_msg, reason="ValidationFailed")
        raise ValidationError(error_msg)

    def handle_reconciliation_error(
        self,
        store: ObjectStore,
        body: dict[str, Any],
        error: OperatorError,
    ) -> NoReturn:
        """Translate an operator error into a kopf outcome.

        Terminal errors write state=Error with a Ready=False condition carrying
        the reason code and stop retrying. Everything else leaves the state
        alone and requeues.

        Raises:
            kopf.PermanentError: For terminal errors
            kopf.TemporaryError: For everything else
        """
        meta = body.get("metadata", {})
        sanitized_error = sanitize_exception(error)
        reason = reason_for(error)

        if not is_terminal(error):
            self.log_warning(meta, f"Reconciliation will be retried: {sanitized_error}", reason=reason)
            raise kopf.TemporaryError(sanitized_error, delay=REQUEUE_DELAY_SECONDS) from error

        if isinstance(error, OwnershipConflictError):
            metrics.ownership_conflicts_total.labels(kind=self.kind).inc()
            emit_ownership_conflict(body, sanitized_error)
        elif isinstance(error, SecretMaterialLostError):
            emit_secret_material_lost(body, sanitized_error)
        elif isinstance(error, ValidationError):
            emit_validate_failed(body, sanitized_error)

        self.write_error_status(store, meta, reason, sanitized_error)
        metrics.resource_status_total.labels(kind=self.kind, status="error").inc()
        raise kopf.PermanentError(sanitized_error) from error

    def write_error_status(self, store: ObjectStore, meta: dict[str, Any], reason: str, message: str) -> None:
        obj = get_or_none(store, self.kind, meta.get("namespace"), meta["name"])
        if obj is None:
            return
        self.write_status(
            ConflictRetryUpdater(store),
            obj,
            state=STATE_ERROR,
            ready=False,
            reason=reason,
            message=message,
        )

    def write_status(
        self,
        updater: ConflictRetryUpdater,
        obj: dict[str, Any],
        state: str | None,
        ready: bool,
        reason: str,
        message: str,
        status_data: dict[str, Any] | None = None,
        condition_fn: Callable[[list[dict[str, Any]]], list[dict[str, Any]]] | None = None,
    ) -> dict[str, Any]:
        """Write state, Ready condition and observedGeneration in one status update.

        Args:
            updater: Conflict retry updater
            obj: Object to update
            state: Desired state, never downgrading progress; None leaves it untouched
            ready: Whether the resource is ready
            reason: Ready condition reason
            message: Ready condition message
            status_data: Additional status fields
            condition_fn: Optional function setting further conditions on the fresh list
        """
        generation = obj.get("metadata", {}).get("generation", 0)

        def mutate(candidate: dict[str, Any]) -> bool:
            status = candidate.setdefault("status", {})
            before = dict(status)
            before["conditions"] = [dict(c) for c in status.get("conditions") or []]
            status.update(copy.deepcopy(status_data or {}))
            if state is not None:
                status["state"] = advance_state(status.get("state"), state)
            conditions = [dict(c) for c in status.get("conditions") or []]
            if condition_fn is not None:
                conditions = condition_fn(conditions)
            status["conditions"] = set_ready_condition(conditions, ready, message, reason, generation)
            status["observedGeneration"] = generation
            return status != before

        result = updater.apply_status(obj, mutate)
        metrics.resource_status_total.labels(kind=self.kind, status="ready" if ready else "not_ready").inc()
        return result

    def write_conditions(
        self,
        updater: ConflictRetryUpdater,
        obj: dict[str, Any],
        condition_fn: Callable[[list[dict[str, Any]]], list[dict[str, Any]]],
    ) -> dict[str, Any]:
        """Update conditions only, leaving state, Ready and observedGeneration alone."""

        def mutate(candidate: dict[str, Any]) -> bool:
            status = candidate.setdefault("status", {})
            before = [dict(c) for c in status.get("conditions") or []]
            conditions = condition_fn([dict(c) for c in before])
            if conditions == before:
                return False
            status["conditions"] = conditions
            return True

        return updater.apply_status(obj, mutate)

    def mark_deleting(self, updater: ConflictRetryUpdater, obj: dict[str, Any]) -> dict[str, Any]:
        if obj.get("status", {}).get("state") == STATE_DELETING:
            return obj
        return self.write_status(updater, obj, STATE_DELETING, False, REASON_DELETING, "Deletion in progress")

    def reconcile_with_metrics(
        self,
        body: dict[str, Any],
        reconcile_fn: Callable[[], None],
    ) -> None:
        """Execute reconciliation with metrics and error handling.

        Args:
            body: Kubernetes resource object
            reconcile_fn: Function to execute for reconciliation
        """
        meta = body.get("metadata", {})
        emit_reconcile_started(body)
        metrics.reconcile_total.labels(kind=self.kind, result="started").inc()

        start_time = time.time()
        try:
            reconcile_fn()
            metrics.reconcile_total.labels(kind=self.kind, result="success").inc()
        except Exception as e:
            sanitized_error = sanitize_exception(e)
            error_type = type(e).__name__
            metrics.error_total.labels(kind=self.kind, error_type=error_type).inc()
            self.log_error(meta, "Reconciliation failed", error=e, reason="ReconciliationFailed")
            emit_reconcile_failed(body, f"Reconciliation failed: {sanitized_error}")
            metrics.reconcile_total.labels(kind=self.kind, result="error").inc()
            raise
        finally:
            duration = time.time() - start_time
            metrics.reconcile_duration_seconds.labels(kind=self.kind).observe(duration)

    def run(self, store: ObjectStore, body: dict[str, Any], reconcile_fn: Callable[[], None]) -> None:
        """Run a reconcile and map operator errors onto kopf retry semantics."""
        try:
            self.reconcile_with_metrics(body, reconcile_fn)
        except OperatorError as e:
            self.handle_reconciliation_error(store, body, e)
