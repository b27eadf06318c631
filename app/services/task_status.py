"""Task status state machine: transition validation and status predicates.

Pure functions of the status values only; no I/O. The guarded write that
actually moves a task lives in app.services.tasks.transition_task.
"""

from dataclasses import dataclass

from app.models.task import VALID_TRANSITIONS, TaskStatus

TERMINAL_STATUSES = frozenset({TaskStatus.PAID, TaskStatus.EXPIRED, TaskStatus.CANCELLED})

DISPUTABLE_STATUSES = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.PENDING_REVIEW})

# Cancellation is only allowed before real-world work has begun
PRE_WORK_STATUSES = frozenset({
    TaskStatus.OPEN, TaskStatus.PENDING_ACCEPTANCE, TaskStatus.ASSIGNED,
})


@dataclass(frozen=True)
class TransitionCheck:
    valid: bool
    error: str | None = None


def _coerce(status: TaskStatus | str | None) -> TaskStatus | None:
    if isinstance(status, TaskStatus):
        return status
    try:
        return TaskStatus(status)
    except ValueError:
        return None


def _label(status: TaskStatus | str | None) -> str:
    return status.value if isinstance(status, TaskStatus) else str(status)


def validate_status_transition(
    current: TaskStatus | str, target: TaskStatus | str
) -> TransitionCheck:
    """Check whether current -> target is an edge of the task state machine."""
    source = _coerce(current)
    if source is None:
        return TransitionCheck(False, f"Unknown current status: {_label(current)}")

    allowed = VALID_TRANSITIONS[source]
    if _coerce(target) not in allowed:
        options = ", ".join(sorted(s.value for s in allowed)) or "(none - terminal state)"
        return TransitionCheck(
            False,
            f"Invalid status transition from '{source.value}' to '{_label(target)}'. "
            f"Valid transitions from '{source.value}': {options}",
        )
    return TransitionCheck(True)


def allowed_transitions(status: TaskStatus | str) -> list[str]:
    source = _coerce(status)
    if source is None:
        return []
    return sorted(s.value for s in VALID_TRANSITIONS[source])


def is_terminal_status(status: TaskStatus | str) -> bool:
    return _coerce(status) in TERMINAL_STATUSES


def is_cancellable(status: TaskStatus | str) -> bool:
    return _coerce(status) in PRE_WORK_STATUSES


def is_disputable(status: TaskStatus | str) -> bool:
    return _coerce(status) in DISPUTABLE_STATUSES
