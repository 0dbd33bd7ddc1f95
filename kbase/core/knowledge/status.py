# kbase/core/knowledge/status.py
"""
Index status state machine for resources.

    processing --> finish
    processing --> failed

A settled resource (finish/failed) can only go back to ``processing`` when a
new ingestion task for it starts; see ``check_reopen``.
"""

from enum import Enum

from kbase.core.exceptions import InvalidStatusTransitionError


class IndexStatus(str, Enum):
    PROCESSING = "processing"
    FINISH = "finish"
    FAILED = "failed"

    @property
    def is_settled(self) -> bool:
        return self is not IndexStatus.PROCESSING


_FORWARD = {
    IndexStatus.PROCESSING: {IndexStatus.FINISH, IndexStatus.FAILED},
    IndexStatus.FINISH: set(),
    IndexStatus.FAILED: set(),
}


def check_transition(current: str, target: str) -> IndexStatus:
    """
    Validate a forward transition and return the target status.

    Raises:
        InvalidStatusTransitionError: for anything but processing -> finish|failed
    """
    try:
        current_status, target_status = IndexStatus(current), IndexStatus(target)
    except ValueError:
        raise InvalidStatusTransitionError(str(current), str(target))
    if target_status not in _FORWARD[current_status]:
        raise InvalidStatusTransitionError(current_status.value, target_status.value)
    return target_status


def check_reopen(current: str) -> IndexStatus:
    """Validate that a new ingestion task may move ``current`` back to processing."""
    try:
        current_status = IndexStatus(current)
    except ValueError:
        raise InvalidStatusTransitionError(str(current), IndexStatus.PROCESSING.value)
    if not current_status.is_settled:
        raise InvalidStatusTransitionError(current_status.value, IndexStatus.PROCESSING.value)
    return IndexStatus.PROCESSING
