# hostforge/tasks/status.py
"""Task status machine shared by every provisionable resource.

Two tracks are kept per resource. ``status`` is the lifecycle of the
resource itself (pending -> installing -> active, removing, failed).
``update_status`` tracks an update independently, so a resource stays
``active`` and usable while an update is queued, running, or has failed.

Request side (``can_transition`` / ``apply``) moves a resource into its
queued state. Job side (``is_eligible`` / ``begin`` / ``complete`` /
``fail``) is what a worker does with it afterwards.
"""
from enum import Enum
from typing import Optional

from hostforge.core.errors import StateConflictError


class TaskStatus(str, Enum):
    PENDING = "pending"
    INSTALLING = "installing"
    UPDATING = "updating"
    ACTIVE = "active"
    REMOVING = "removing"
    FAILED = "failed"
    SUCCESS = "success"
    PAUSED = "paused"
    DISABLED = "disabled"


class Operation(str, Enum):
    INSTALL = "install"
    UPDATE = "update"
    REMOVE = "remove"
    RETRY = "retry"
    CANCEL_UPDATE = "cancel_update"
    PAUSE = "pause"
    RESUME = "resume"


IN_FLIGHT = (TaskStatus.PENDING, TaskStatus.INSTALLING, TaskStatus.UPDATING, TaskStatus.REMOVING)
UPDATE_IN_FLIGHT = (TaskStatus.PENDING, TaskStatus.UPDATING)

# Status a queued job expects to find when it picks the resource up.
_QUEUED_STATUS = {
    Operation.INSTALL: TaskStatus.PENDING,
    Operation.REMOVE: TaskStatus.REMOVING,
    Operation.PAUSE: TaskStatus.ACTIVE,
    Operation.RESUME: TaskStatus.PAUSED,
}


def can_transition(resource, op: Operation) -> bool:
    if resource is None:
        return op == Operation.INSTALL

    status = resource.status
    update_status = resource.update_status

    if op == Operation.INSTALL:
        return status in (TaskStatus.FAILED, TaskStatus.PENDING)
    if op == Operation.UPDATE:
        return status == TaskStatus.ACTIVE and update_status not in UPDATE_IN_FLIGHT
    if op == Operation.REMOVE:
        return status in (TaskStatus.ACTIVE, TaskStatus.FAILED, TaskStatus.PAUSED) and update_status not in UPDATE_IN_FLIGHT
    if op == Operation.RETRY:
        return status == TaskStatus.FAILED or update_status == TaskStatus.FAILED
    if op == Operation.CANCEL_UPDATE:
        return update_status in (TaskStatus.PENDING, TaskStatus.UPDATING, TaskStatus.FAILED)
    if op == Operation.PAUSE:
        return status == TaskStatus.ACTIVE and update_status not in UPDATE_IN_FLIGHT
    if op == Operation.RESUME:
        return status == TaskStatus.PAUSED
    return False


def ensure_transition(resource, op: Operation):
    if not can_transition(resource, op):
        current = resource.status.value if resource is not None else "absent"
        raise StateConflictError(f"Cannot {op.value.replace('_', ' ')} while {current}.")


def apply(resource, op: Operation) -> TaskStatus:
    """Move ``resource`` into the queued state for ``op`` and return its new status.

    ``retry`` resolves to the operation it re-queues; call
    :func:`retried_operation` first if the caller needs to know which.
    """
    ensure_transition(resource, op)

    if op == Operation.INSTALL:
        resource.status = TaskStatus.PENDING
        resource.error_log = None
    elif op == Operation.UPDATE:
        resource.update_status = TaskStatus.PENDING
        resource.update_error_log = None
    elif op == Operation.REMOVE:
        resource.previous_status = resource.status
        resource.status = TaskStatus.REMOVING
        resource.error_log = None
    elif op == Operation.RETRY:
        if resource.status == TaskStatus.FAILED:
            resource.status = TaskStatus.PENDING
            resource.error_log = None
        else:
            resource.update_status = TaskStatus.PENDING
            resource.update_error_log = None
    elif op == Operation.CANCEL_UPDATE:
        resource.update_status = None
        resource.update_error_log = None
        resource.pending_changes = {}
    # pause/resume are queued without a marker; the job re-checks the status.
    return resource.status


def retried_operation(resource) -> Optional[Operation]:
    if resource.status == TaskStatus.FAILED:
        return Operation.INSTALL
    if resource.update_status == TaskStatus.FAILED:
        return Operation.UPDATE
    return None


def is_eligible(resource, op: Operation) -> bool:
    """Whether a queued job for ``op`` may still run against ``resource``."""
    if resource is None:
        return False
    if op == Operation.UPDATE:
        return resource.status == TaskStatus.ACTIVE and resource.update_status == TaskStatus.PENDING
    return resource.status == _QUEUED_STATUS.get(op)


def begin(resource, op: Operation):
    if op == Operation.INSTALL:
        resource.status = TaskStatus.INSTALLING
    elif op == Operation.UPDATE:
        resource.update_status = TaskStatus.UPDATING


def still_current(resource, op: Operation) -> bool:
    """Checked after the transport returns: has anyone changed the resource under us?"""
    if resource is None:
        return False
    if op == Operation.INSTALL:
        return resource.status == TaskStatus.INSTALLING
    if op == Operation.UPDATE:
        return resource.update_status == TaskStatus.UPDATING
    if op == Operation.REMOVE:
        return resource.status == TaskStatus.REMOVING
    return resource.status == _QUEUED_STATUS.get(op)


def complete(resource, op: Operation):
    if op == Operation.INSTALL:
        resource.status = TaskStatus.ACTIVE
        resource.error_log = None
    elif op == Operation.UPDATE:
        resource.update_status = None
        resource.update_error_log = None
    elif op == Operation.PAUSE:
        resource.status = TaskStatus.PAUSED
    elif op == Operation.RESUME:
        resource.status = TaskStatus.ACTIVE


def fail(resource, op: Operation, error_log: str):
    if op == Operation.UPDATE:
        resource.update_status = TaskStatus.FAILED
        resource.update_error_log = error_log
    elif op == Operation.REMOVE:
        resource.status = resource.previous_status or TaskStatus.ACTIVE
        resource.previous_status = None
        resource.error_log = error_log
    elif op in (Operation.PAUSE, Operation.RESUME):
        resource.error_log = error_log
    else:
        resource.status = TaskStatus.FAILED
        resource.error_log = error_log
