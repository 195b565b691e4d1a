# hostforge/tasks/jobs.py
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from hostforge.core.config_store import AppConfig
from hostforge.core.errors import TransportError
from hostforge.core.logging import log
from hostforge.core.store import Store
from hostforge.guard.conflicts import ConflictGuard
from hostforge.servers.models import Resource, new_id, now
from hostforge.tasks import status
from hostforge.tasks.classify import to_error
from hostforge.tasks.kinds import KindContext, KindSpec, spec_for
from hostforge.tasks.status import Operation, TaskStatus
from hostforge.transport.base import Transport, first_failure

_JOB_TYPES: Dict[str, Type["Job"]] = {}

# Model fields an update may change directly; everything else lands in ``config``.
_UPDATABLE_FIELDS = ("name", "version", "port", "command", "working_directory", "user")


def register_job(cls):
    _JOB_TYPES[cls.type_name] = cls
    return cls


def job_from_dict(data: Dict[str, Any]) -> "Job":
    cls = _JOB_TYPES.get(data.get("type", ""))
    if cls is None:
        raise ValueError(f"unknown job type: {data.get('type')!r}")
    job = cls.from_params(data.get("params") or {})
    job.job_id = data.get("job_id") or job.job_id
    job.enqueued_at = data.get("enqueued_at") or job.enqueued_at
    return job


@dataclass
class JobContext:
    store: Store
    transport: Transport
    config: AppConfig
    # Anything with ``submit(job)``; follow-up jobs are queued through it.
    queue: Any = None


class Job:
    type_name = ""

    def __init__(self):
        self.job_id = new_id()
        self.enqueued_at = time.time()

    def params(self) -> Dict[str, Any]:
        return {}

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "Job":
        return cls(**params)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type_name,
            "job_id": self.job_id,
            "enqueued_at": self.enqueued_at,
            "params": self.params(),
        }

    @property
    def scope(self) -> str:
        return "worker"

    def run(self, ctx: JobContext):
        raise NotImplementedError

    def __repr__(self):
        return f"<{type(self).__name__} {self.params()}>"


def holds_or_claims_default(r: Resource) -> bool:
    return r.holds_default or bool(r.config.get("claims_default"))


def _live(r: Resource) -> bool:
    return r.status not in (TaskStatus.FAILED, TaskStatus.REMOVING)


def claim_default(store: Store, resource: Resource, kind: KindSpec):
    """First-of-kind claim, made under ``store.lock`` when the install starts."""
    if not kind.default_flags:
        return
    resource.config.pop("claims_default", None)
    siblings = [
        r for r in store.resources(resource.server_id, resource.kind)
        if r.id != resource.id and _live(r) and holds_or_claims_default(r)
    ]
    if not siblings:
        resource.config["claims_default"] = True


@register_job
class ResourceJob(Job):
    """Install, update, remove, pause or resume one resource on its server."""

    type_name = "resource"

    def __init__(self, operation: str, resource_id: str):
        super().__init__()
        self.operation = Operation(operation)
        self.resource_id = resource_id
        self._server_id: Optional[str] = None

    def params(self):
        return {"operation": self.operation.value, "resource_id": self.resource_id}

    @property
    def scope(self) -> str:
        return f"server-{self._server_id}" if self._server_id else "worker"

    def _builder(self, kind: KindSpec):
        return {
            Operation.INSTALL: kind.install,
            Operation.UPDATE: kind.update,
            Operation.REMOVE: kind.remove,
            Operation.PAUSE: kind.pause,
            Operation.RESUME: kind.resume,
        }[self.operation]

    def run(self, ctx: JobContext):
        store = ctx.store
        op = self.operation

        with store.lock:
            resource = store.get_resource(self.resource_id)
            if not status.is_eligible(resource, op):
                log("worker", f"skip {op.value} for resource {self.resource_id}: no longer eligible")
                return
            server = store.get_server(resource.server_id)
            if server is None:
                log("worker", f"skip {op.value} for resource {self.resource_id}: server is gone")
                return
            self._server_id = server.id
            kind = spec_for(resource.kind)
            if op == Operation.INSTALL:
                conflicts = ConflictGuard(store, ctx.config.app_user).check_install(
                    resource.server_id, resource.kind, resource.version, resource.port, exclude_id=resource.id,
                )
                if conflicts:
                    status.fail(resource, op, " ".join(conflicts.values()))
                    resource.updated_at = now()
                    store.save(resource)
                    log(self.scope, f"install {resource.kind.value} #{resource.id} rejected: {resource.error_log}", level="error")
                    return
                claim_default(store, resource, kind)
            status.begin(resource, op)
            resource.updated_at = now()
            store.save(resource)
            parent = store.get_resource(resource.parent_id)

        log(self.scope, f"{op.value} {resource.kind.value} #{resource.id} started")

        error: Optional[TransportError] = None
        try:
            commands = self._builder(kind)(resource, KindContext(server, parent, ctx.config.app_user))
            results = ctx.transport.execute(server, commands)
            failed = first_failure(results)
            if failed is not None:
                error = to_error(failed, kind.classify)
        except TransportError as e:
            error = e

        with store.lock:
            current = store.get_resource(self.resource_id)
            if not status.still_current(current, op):
                log(self.scope, f"{op.value} {resource.kind.value} #{resource.id} result discarded, resource changed meanwhile", level="warning")
                return
            current.updated_at = now()

            if error is not None:
                status.fail(current, op, error.error_log())
                store.save(current)
                log(self.scope, f"{op.value} {current.kind.value} #{current.id} failed: {error.message}", level="error")
                return

            if op == Operation.REMOVE:
                # Database users live inside the engine that was just purged.
                children = store.list(Resource, lambda r: r.parent_id == current.id)
                for child in children:
                    store.delete(Resource, child.id)
                store.delete(Resource, current.id)
                suffix = f" with {len(children)} dependent record(s)" if children else ""
                log(self.scope, f"{current.kind.value} #{current.id} removed{suffix}")
                return

            if op == Operation.UPDATE:
                self._apply_changes(current)
            status.complete(current, op)
            changed = [current]
            if op == Operation.INSTALL:
                changed += self._settle_defaults(store, current, kind)
            store.save_many(*changed)

        log(self.scope, f"{op.value} {current.kind.value} #{current.id} completed")

    @staticmethod
    def _apply_changes(resource: Resource):
        for key, value in resource.pending_changes.items():
            if key in _UPDATABLE_FIELDS:
                setattr(resource, key, value)
            else:
                resource.config[key] = value
        resource.pending_changes = {}

    @staticmethod
    def _settle_defaults(store: Store, resource: Resource, kind: KindSpec) -> List[Resource]:
        """Flip the default flags in the same write that makes the resource active."""
        if not resource.config.pop("claims_default", False):
            return []
        changed = []
        for other in store.resources(resource.server_id, resource.kind):
            if other.id != resource.id and other.holds_default:
                for flag in kind.default_flags:
                    setattr(other, flag, False)
                changed.append(other)
        for flag in kind.default_flags:
            setattr(resource, flag, True)
        return changed
