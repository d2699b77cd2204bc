"""Exclusive-ownership markers embedded in shared remote records.

A shared remote record (for example a DNS record) has only a free-text
comment field. Ownership is recorded at the start of that comment as::

    [k8s:<kind>/[<namespace>/]<name>] <free text>

Only the resource named by the marker, or anyone when no marker is present,
may mutate the record.
"""

from __future__ import annotations

from ..exceptions import OwnershipConflictError
from ..models import ObjectRef

MARKER_PREFIX = "[k8s:"
MARKER_SUFFIX = "]"


def build_comment(owner: ObjectRef, text: str = "") -> str:
    """Render a comment carrying the owner marker followed by free text."""
    marker = f"{MARKER_PREFIX}{owner}{MARKER_SUFFIX}"
    if text:
        return f"{marker} {text}"
    return marker


def _split(comment: str | None) -> tuple[ObjectRef | None, str]:
    if not comment or not comment.startswith(MARKER_PREFIX):
        return None, comment or ""
    end = comment.find(MARKER_SUFFIX, len(MARKER_PREFIX))
    if end == -1:
        return None, comment
    try:
        owner = ObjectRef.parse(comment[len(MARKER_PREFIX):end])
    except ValueError:
        return None, comment
    rest = comment[end + len(MARKER_SUFFIX):]
    if rest.startswith(" "):
        rest = rest[1:]
    return owner, rest


def parse_owner(comment: str | None) -> ObjectRef | None:
    """Return the owner recorded in a comment, or None when unmarked."""
    owner, _ = _split(comment)
    return owner


def extract_text(comment: str | None) -> str:
    """Return the free text of a comment with any marker removed."""
    _, text = _split(comment)
    return text


def can_claim(comment: str | None, claimant: ObjectRef) -> bool:
    owner = parse_owner(comment)
    return owner is None or owner == claimant


def get_conflict(comment: str | None, claimant: ObjectRef) -> ObjectRef | None:
    """Return the conflicting owner, or None when the claimant may write."""
    owner = parse_owner(comment)
    if owner is None or owner == claimant:
        return None
    return owner


class OwnershipClaim:
    """Typed ownership interface over the comment encoding."""

    def __init__(self, claimant: ObjectRef) -> None:
        self.claimant = claimant

    def can_claim(self, comment: str | None) -> bool:
        return can_claim(comment, self.claimant)

    def conflict(self, comment: str | None) -> ObjectRef | None:
        return get_conflict(comment, self.claimant)

    def owns(self, comment: str | None) -> bool:
        return parse_owner(comment) == self.claimant

    def claim(self, comment: str | None, text: str | None = None, record: str = "record") -> str:
        """Return the comment to write for a claimed record.

        Raises:
            OwnershipConflictError: If another resource holds the marker
        """
        owner = self.conflict(comment)
        if owner is not None:
            raise OwnershipConflictError(record, owner, self.claimant)
        return build_comment(self.claimant, extract_text(comment) if text is None else text)

    def release(self, comment: str | None) -> str:
        """Strip our marker, keeping the free text. Foreign markers stay."""
        if not self.owns(comment):
            return comment or ""
        return extract_text(comment)
