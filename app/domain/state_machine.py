from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from app.domain.permissions import OPERATOR_ONLY, OWNER_ONLY, OWNER_OR_OPERATOR, PrincipalRole


class TaskStatus(StrEnum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    PENDING_VERIFICATION = "PendingVerification"
    COMPLETED = "Completed"
    REQUIRES_ATTENTION = "RequiresAttention"


class TaskTrigger(StrEnum):
    START = "start"
    SUBMIT_FOR_VERIFICATION = "submit_for_verification"
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class TaskTransition:
    source: TaskStatus
    target: TaskStatus
    actors: frozenset[PrincipalRole]


TASK_TRANSITIONS: dict[TaskTrigger, TaskTransition] = {
    TaskTrigger.START: TaskTransition(
        source=TaskStatus.PENDING,
        target=TaskStatus.IN_PROGRESS,
        actors=OWNER_OR_OPERATOR,
    ),
    TaskTrigger.SUBMIT_FOR_VERIFICATION: TaskTransition(
        source=TaskStatus.IN_PROGRESS,
        target=TaskStatus.PENDING_VERIFICATION,
        actors=OPERATOR_ONLY,
    ),
    TaskTrigger.APPROVE: TaskTransition(
        source=TaskStatus.PENDING_VERIFICATION,
        target=TaskStatus.COMPLETED,
        actors=OWNER_ONLY,
    ),
    TaskTrigger.REJECT: TaskTransition(
        source=TaskStatus.PENDING_VERIFICATION,
        target=TaskStatus.REQUIRES_ATTENTION,
        actors=OWNER_ONLY,
    ),
}

TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.COMPLETED, TaskStatus.REQUIRES_ATTENTION})


def transition_for(trigger: TaskTrigger) -> TaskTransition:
    return TASK_TRANSITIONS[trigger]


def allowed_targets(source: TaskStatus) -> set[TaskStatus]:
    return {item.target for item in TASK_TRANSITIONS.values() if item.source == source}


def conflict_message(verb: str, current: TaskStatus) -> str:
    if current in TERMINAL_STATUSES:
        return f"cannot {verb} task in terminal status {current.value}"
    allowed = ", ".join(sorted(item.value for item in allowed_targets(current)))
    return f"cannot {verb} task in status {current.value}; next allowed status: {allowed}"
