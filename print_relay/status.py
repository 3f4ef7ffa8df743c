"""Canonical job status resolution for free-text spooler status.

Spoolers report job status as loosely formatted text, and Windows in
particular concatenates several flags into one value (``"Printing,
Retained"``). Decisions in the relay are made on a small canonical set
instead. Resolution is stateless: a case-insensitive substring match where
the first rule to match wins.

Rule order (highest priority first):

1. ``deleting``
2. ``paused``
3. ``printing`` / ``spooling`` / ``processing``
4. ``retained``
5. ``normal`` (queued, reported as ``Waiting``)

Transient conditions outrank ``retained`` so a deletion or pause is never
masked by a retained flag on the same job.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

__all__ = [
    "CanonicalStatus",
    "normalize_status",
]


class CanonicalStatus(str, Enum):
    """Normalized status of a single spooled job."""

    PRINTING = "Printing"
    PAUSED = "Paused"
    RETAINED = "Retained"
    DELETING = "Deleting"
    WAITING = "Waiting"
    UNKNOWN = "Unknown"


_STATUS_RULES: tuple[tuple[tuple[str, ...], CanonicalStatus], ...] = (
    (("deleting",), CanonicalStatus.DELETING),
    (("paused",), CanonicalStatus.PAUSED),
    (("printing", "spooling", "processing"), CanonicalStatus.PRINTING),
    (("retained",), CanonicalStatus.RETAINED),
    (("normal",), CanonicalStatus.WAITING),
)


def normalize_status(raw_text: Optional[str]) -> CanonicalStatus:
    """Map raw spooler status text to a :class:`CanonicalStatus`.

    Args:
        raw_text: Status text as surfaced by the spooler. ``None`` and
            blank strings are accepted.

    Returns:
        The canonical status, ``CanonicalStatus.UNKNOWN`` when nothing matches.
    """
    normalized = str(raw_text or "").strip().lower()
    if not normalized:
        return CanonicalStatus.UNKNOWN

    for tokens, status in _STATUS_RULES:
        if any(token in normalized for token in tokens):
            return status

    return CanonicalStatus.UNKNOWN
