"""
Generation task state machine.

Explicit state transitions for Suno lyrics/audio tasks. Never mutate a
task's status directly; always go through ``TaskReconciler.apply_update``,
which checks ``can_transition()``.

States:
    PENDING    - submitted upstream; nothing reported yet
    PROCESSING - partial result reported (text ready, first clip ready)
    COMPLETED  - final result reported; artifacts stored
    FAILED     - upstream reported an error

Invariants:
    1. PENDING may move to any state.
    2. PROCESSING may move to PROCESSING, COMPLETED or FAILED.
    3. Terminal states (COMPLETED/FAILED) are final.
    4. PROCESSING → PENDING is a stale report and is ignored, not an error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class TaskStatus(str, Enum):
    """Canonical generation task states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskKind(str, Enum):
    LYRICS = "lyrics"
    AUDIO = "audio"


# Terminal states allow no further transitions.
TERMINAL_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
})

# Allowed transitions: from_state -> set of valid to_states.
_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({
        TaskStatus.PENDING,
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    }),
    TaskStatus.PROCESSING: frozenset({
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    }),
    # Terminal states have no outgoing transitions.
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


def is_terminal(state: TaskStatus) -> bool:
    """Check if a state is terminal (no further transitions)."""
    return state in TERMINAL_STATES


def can_transition(from_state: TaskStatus, to_state: TaskStatus) -> bool:
    """Check if a transition is valid without raising."""
    return to_state in _TRANSITIONS.get(from_state, frozenset())


@dataclass
class ArtifactRef:
    """One upstream result (audio clip or lyrics text) and where we stored it."""

    artifact_id: Optional[str] = None
    source_url: Optional[str] = None
    title: Optional[str] = None
    text: Optional[str] = None
    duration: Optional[float] = None
    image_url: Optional[str] = None
    stored_url: Optional[str] = None
    storage_key: Optional[str] = None
    storage_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "source_url": self.source_url,
            "title": self.title,
            "text": self.text,
            "duration": self.duration,
            "image_url": self.image_url,
            "stored_url": self.stored_url,
            "storage_key": self.storage_key,
            "storage_error": self.storage_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArtifactRef":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})


@dataclass
class TaskUpdate:
    """A normalized status report from either a callback or a poll."""

    task_id: str
    status: TaskStatus
    artifacts: list[ArtifactRef] = field(default_factory=list)
    error: Optional[str] = None
    source: str = "poll"


@dataclass
class GenerationTask:
    external_task_id: str
    kind: TaskKind
    status: TaskStatus = TaskStatus.PENDING
    result_refs: list[ArtifactRef] = field(default_factory=list)
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.external_task_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "result_refs": [a.to_dict() for a in self.result_refs],
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
