"""Finalizer primitives and multi-phase deletion sequencing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from ..constants import FINALIZER
from ..exceptions import NotFoundError
from ..store import ObjectStore
from .retry import ConflictRetryUpdater

logger = logging.getLogger(__name__)

# Canonical deletion step names, in execution order
STEP_QUIESCE_WORKLOAD = "quiesce-workload"
STEP_RELEASE_DEPENDENTS = "release-dependents"
STEP_DELETE_REMOTE = "delete-remote"
STEP_RELEASE_AUXILIARY = "release-auxiliary"


def has_finalizer(obj: dict[str, Any], finalizer: str = FINALIZER) -> bool:
    return finalizer in (obj.get("metadata", {}).get("finalizers") or [])


def is_being_deleted(obj: dict[str, Any]) -> bool:
    return bool(obj.get("metadata", {}).get("deletionTimestamp"))


def should_finalize(obj: dict[str, Any], finalizer: str = FINALIZER) -> bool:
    """True when the object is being deleted and our cleanup still blocks it."""
    return is_being_deleted(obj) and has_finalizer(obj, finalizer)


def ensure_finalizer(
    updater: ConflictRetryUpdater,
    obj: dict[str, Any],
    finalizer: str = FINALIZER,
) -> tuple[dict[str, Any], bool]:
    """Add the finalizer if missing.

    Returns:
        The persisted object and whether a finalizer was added
    """
    added = False

    def mutate(candidate: dict[str, Any]) -> bool:
        nonlocal added
        # Never re-block an object that is already going away
        if is_being_deleted(candidate) or has_finalizer(candidate, finalizer):
            added = False
            return False
        candidate["metadata"]["finalizers"] = list(candidate["metadata"].get("finalizers") or []) + [finalizer]
        added = True
        return True

    result = updater.apply(obj, mutate)
    return result, added


def remove_finalizer(
    updater: ConflictRetryUpdater,
    obj: dict[str, Any],
    finalizer: str = FINALIZER,
) -> tuple[dict[str, Any], bool]:
    """Remove the finalizer if present.

    Returns:
        The persisted object and whether a finalizer was removed
    """
    removed = False

    def mutate(candidate: dict[str, Any]) -> bool:
        nonlocal removed
        if not has_finalizer(candidate, finalizer):
            removed = False
            return False
        candidate["metadata"]["finalizers"] = [
            f for f in candidate["metadata"]["finalizers"] if f != finalizer
        ]
        removed = True
        return True

    try:
        result = updater.apply(obj, mutate)
    except NotFoundError:
        # Object already gone, nothing left to release
        return obj, False
    return result, removed


def release_finalizer(
    updater: ConflictRetryUpdater,
    store: ObjectStore,
    kind: str,
    namespace: str | None,
    name: str,
    finalizer: str,
) -> bool:
    """Remove a finalizer from an auxiliary object, tolerating its absence."""
    try:
        obj = store.get(kind, namespace, name)
    except NotFoundError:
        return False
    _, removed = remove_finalizer(updater, obj, finalizer)
    return removed


class StepOutcome(Enum):
    """Result of running a single deletion step."""

    COMPLETED = "Completed"
    IN_PROGRESS = "InProgress"


@dataclass
class DeletionStep:
    """One idempotent step of a deletion sequence.

    ``is_done`` inspects currently observable state. When it reports True the
    step is skipped, which is what makes a resumed sequence safe.
    """

    name: str
    run: Callable[[], "StepOutcome | None"]
    is_done: Callable[[], bool] | None = None


@dataclass
class DeletionProgress:
    """What a single pass of a deletion sequence achieved."""

    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    pending_step: str | None = None
    finalizer_removed: bool = False

    @property
    def done(self) -> bool:
        return self.pending_step is None


class DeletionSequence:
    """Runs deletion steps in order and removes the finalizer at the end.

    Every pass starts from the first step. Steps already done are skipped,
    a step still converging stops the pass, and any exception propagates so
    the caller can requeue. The finalizer goes only after a pass in which
    every step completed or was observed done.
    """

    def __init__(self, updater: ConflictRetryUpdater, finalizer: str = FINALIZER) -> None:
        self.updater = updater
        self.finalizer = finalizer

    def run(self, obj: dict[str, Any], steps: list[DeletionStep]) -> DeletionProgress:
        progress = DeletionProgress()
        if not should_finalize(obj, self.finalizer):
            return progress

        name = obj.get("metadata", {}).get("name")
        for step in steps:
            if step.is_done is not None and step.is_done():
                logger.debug("Deletion step %s of %s already done", step.name, name)
                progress.skipped.append(step.name)
                continue
            outcome = step.run()
            if outcome is StepOutcome.IN_PROGRESS:
                logger.info("Deletion step %s of %s in progress", step.name, name)
                progress.pending_step = step.name
                return progress
            progress.completed.append(step.name)

        _, progress.finalizer_removed = remove_finalizer(self.updater, obj, self.finalizer)
        return progress


def tolerate_not_found(fn: Callable[[], Any]) -> Callable[[], StepOutcome]:
    """Wrap a step action so that an already-missing target counts as completed."""

    def run() -> StepOutcome:
        try:
            fn()
        except NotFoundError:
            logger.debug("Deletion target already gone")
        return StepOutcome.COMPLETED

    return run
