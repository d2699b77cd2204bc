"""Optimistic-concurrency retry for object mutations."""

from __future__ import annotations

import copy
import logging
import os
import time
from typing import Any, Callable

from .. import metrics
from ..exceptions import ConflictVersionError, RetryExhaustedError
from ..store import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = int(os.getenv("CONFLICT_MAX_RETRIES", "5"))
DEFAULT_RETRY_DELAY = float(os.getenv("CONFLICT_RETRY_DELAY_SECONDS", "0.1"))

# Mutates the object in place. Returning False means "nothing to change", no write is issued.
MutateFn = Callable[[dict[str, Any]], "bool | None"]


class ConflictRetryUpdater:
    """Applies a mutation and persists it, replaying on version conflicts.

    The mutation is re-run in full against the freshly read object on every
    attempt, so the stored object ends either fully mutated or unchanged.
    """

    def __init__(
        self,
        store: ObjectStore,
        max_retries: int = DEFAULT_MAX_RETRIES,
        delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.store = store
        self.max_retries = max_retries
        self.delay = delay
        self._sleep = sleep

    def apply(self, obj: dict[str, Any], mutate: MutateFn) -> dict[str, Any]:
        """Mutate and persist the whole object."""
        return self._apply(obj, mutate, status=False)

    def apply_status(self, obj: dict[str, Any], mutate: MutateFn) -> dict[str, Any]:
        """Mutate and persist through the status sub-resource."""
        return self._apply(obj, mutate, status=True)

    def _apply(self, obj: dict[str, Any], mutate: MutateFn, status: bool) -> dict[str, Any]:
        current = obj
        kind = obj.get("kind", "unknown")
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            candidate = copy.deepcopy(current)
            if mutate(candidate) is False:
                return current
            try:
                if status:
                    return self.store.update_status(candidate)
                return self.store.update(candidate)
            except ConflictVersionError as e:
                last_error = e
                metrics.conflict_retries_total.labels(kind=kind).inc()
                logger.debug(
                    "Version conflict on %s %s (attempt %d/%d)",
                    kind,
                    obj.get("metadata", {}).get("name"),
                    attempt,
                    self.max_retries,
                )
                if attempt == self.max_retries:
                    break
                current = self._reload(current)
                self._sleep(self.delay)

        raise RetryExhaustedError(self.max_retries, last_error)

    def _reload(self, obj: dict[str, Any]) -> dict[str, Any]:
        meta = obj.get("metadata", {})
        return self.store.get(obj["kind"], meta.get("namespace"), meta["name"])
