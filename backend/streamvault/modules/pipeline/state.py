"""Asset lifecycle state machine.

``transition`` is the only place that decides whether a status change is
legal; the repository encodes the same table in its UPDATE statements.
"""

from enum import Enum


class AssetStatus(str, Enum):
    """Lifecycle status of an uploaded asset."""

    REGISTERED = "registered"
    INGESTED = "ingested"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({AssetStatus.READY, AssetStatus.FAILED})

# target -> statuses it may be entered from
ALLOWED_PREDECESSORS: dict[AssetStatus, frozenset[AssetStatus]] = {
    AssetStatus.REGISTERED: frozenset(),
    AssetStatus.INGESTED: frozenset({AssetStatus.REGISTERED}),
    AssetStatus.PROCESSING: frozenset({AssetStatus.INGESTED}),
    AssetStatus.READY: frozenset({AssetStatus.PROCESSING}),
    AssetStatus.FAILED: frozenset({AssetStatus.PROCESSING}),
}


class InvalidTransition(Exception):
    """Raised for a backward, skip-ahead or out-of-terminal status change."""

    def __init__(self, current: AssetStatus, target: AssetStatus):
        self.current = current
        self.target = target
        super().__init__(f"Illegal asset transition {current.value} -> {target.value}")


def can_transition(current: AssetStatus, target: AssetStatus) -> bool:
    """Check whether ``current -> target`` is a legal lifecycle step."""
    return current in ALLOWED_PREDECESSORS[target]


def transition(current: AssetStatus, target: AssetStatus) -> AssetStatus:
    """Return ``target`` if the step is legal, otherwise raise InvalidTransition."""
    if not can_transition(AssetStatus(current), AssetStatus(target)):
        raise InvalidTransition(AssetStatus(current), AssetStatus(target))
    return AssetStatus(target)
