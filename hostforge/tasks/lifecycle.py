# hostforge/tasks/lifecycle.py
import re
from typing import Any, Dict

from hostforge.core.errors import StateConflictError, ValidationError
from hostforge.core.logging import log
from hostforge.core.store import Store
from hostforge.guard.conflicts import ConflictGuard, raise_if
from hostforge.servers.models import Resource, ResourceKind, Server, now
from hostforge.tasks import status
from hostforge.tasks.classify import to_error
from hostforge.tasks.jobs import ResourceJob
from hostforge.tasks.kinds import spec_for
from hostforge.tasks.status import Operation, TaskStatus
from hostforge.transport.base import Transport, first_failure

_DB_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_DB_HOST_RE = re.compile(r"^[a-zA-Z0-9.%:_-]+$")
_MAXMEMORY_RE = re.compile(r"^\d+(?:[kmg]b?|b)?$", re.IGNORECASE)
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_UNIX_USER_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
_USER_MESSAGE = "User must be a valid Linux username."

_DB_ENGINES = (ResourceKind.MYSQL, ResourceKind.MARIADB, ResourceKind.POSTGRESQL)
_COMMAND_KINDS = (ResourceKind.SCHEDULED_TASK, ResourceKind.SUPERVISOR_TASK)
_FIELDS = ("name", "version", "port", "command", "working_directory", "user", "parent_id")


def _secret_errors(values: Dict[str, Any]) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for key in ("root_password", "password"):
        pw = values.get(key)
        if pw is not None and (not isinstance(pw, str) or _CONTROL_RE.search(pw)):
            errors[key] = "Passwords cannot contain line breaks or control characters."
    return errors


def _db_user_errors(values: Dict[str, Any]) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    host = values.get("host")
    if host is not None and (not isinstance(host, str) or not _DB_HOST_RE.match(host)):
        errors["host"] = "Host can only contain letters, numbers, dots, hyphens, underscores and %."
    databases = values.get("databases")
    if databases is not None and (
        not isinstance(databases, list)
        or not all(isinstance(d, str) and _DB_NAME_RE.match(d) for d in databases)
    ):
        errors["databases"] = "Database names can only contain letters, numbers, hyphens, and underscores (no spaces)."
    return errors


class LifecycleService:
    """Request side of every resource operation.

    Validation and state checks happen here, synchronously, and raise before
    anything is written. What survives is persisted in its queued state and
    handed to the task manager.
    """

    def __init__(self, store: Store, guard: ConflictGuard, queue, transport: Transport):
        self.store = store
        self.guard = guard
        self.queue = queue
        self.transport = transport

    def _server(self, server_id: str) -> Server:
        return self.store.require(Server, server_id)

    def _resource(self, resource_id: str) -> Resource:
        return self.store.require(Resource, resource_id)

    def _enqueue(self, op: Operation, resource: Resource):
        self.queue.submit(ResourceJob(op.value, resource.id))
        log(f"server-{resource.server_id}", f"{op.value} {resource.kind.value} #{resource.id} queued")

    # ---------------- validation ----------------
    def _validate_fields(self, server_id: str, kind: ResourceKind, data: Dict[str, Any]) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        if kind in _DB_ENGINES:
            name = data.get("name")
            if not name:
                errors["name"] = "Database name is required."
            elif len(name) > 64 or not _DB_NAME_RE.match(name):
                errors["name"] = "Database name can only contain letters, numbers, hyphens, and underscores (no spaces)."
        if kind in _DB_ENGINES or kind == ResourceKind.REDIS:
            pw = (data.get("config") or {}).get("root_password")
            if kind != ResourceKind.REDIS and not pw:
                errors["root_password"] = "Root password is required."
            elif pw and len(pw) < 8:
                errors["root_password"] = "Root password must be at least 8 characters."
        if kind in (ResourceKind.PHP, ResourceKind.NODE) and not data.get("version"):
            errors["version"] = "Please select a version."
        errors.update(_secret_errors(data.get("config") or {}))
        if kind == ResourceKind.DATABASE_USER:
            name = data.get("name")
            if not name or len(name) > 32 or not _DB_NAME_RE.match(name):
                errors["name"] = "Username can only contain letters, numbers, hyphens, and underscores (no spaces)."
            errors.update(_db_user_errors(data.get("config") or {}))
            parent = self.store.get_resource(data.get("parent_id"))
            if parent is None or parent.server_id != server_id or spec_for(parent.kind).category != "database":
                errors["database"] = "Select a database installed on this server."
        if kind == ResourceKind.FIREWALL_RULE:
            rule_type = (data.get("config") or {}).get("rule_type", "allow")
            if rule_type not in ("allow", "deny"):
                errors["rule_type"] = 'Rule type must be either "allow" or "deny".'
        if kind in _COMMAND_KINDS and "command" in data:
            msg = self.guard.check_command(data.get("command"))
            if msg:
                errors["command"] = msg
        if kind in _COMMAND_KINDS and data.get("user") and not _UNIX_USER_RE.match(str(data["user"])):
            errors["user"] = _USER_MESSAGE
        return errors

    # ---------------- operations ----------------
    def install(self, server_id: str, kind: ResourceKind, **data) -> Resource:
        kind = ResourceKind(kind)
        self._server(server_id)
        if kind in _COMMAND_KINDS and not data.get("command"):
            raise ValidationError({"command": "The command must be a valid command string."})
        if kind in _DB_ENGINES + (ResourceKind.REDIS,) and not data.get("port"):
            data["port"] = self.guard.next_available_port(server_id, kind)

        errors = self._validate_fields(server_id, kind, data)
        with self.store.lock:
            errors.update(self.guard.check_install(server_id, kind, data.get("version"), data.get("port")))
            raise_if(errors)
            resource = Resource(
                server_id=server_id,
                kind=kind,
                config=dict(data.get("config") or {}),
                **{k: data[k] for k in _FIELDS if data.get(k) is not None},
            )
            status.ensure_transition(None, Operation.INSTALL)
            self.store.save(resource)
        self._enqueue(Operation.INSTALL, resource)
        return resource

    def update(self, resource_id: str, changes: Dict[str, Any]) -> Resource:
        with self.store.lock:
            resource = self._resource(resource_id)
            raise_if(self.guard.check_update(resource))
            status.ensure_transition(resource, Operation.UPDATE)
            changes = {k: v for k, v in changes.items() if v is not None}
            kind = spec_for(resource.kind)
            errors: Dict[str, str] = {
                key: f"{kind.label} does not support changing {key}."
                for key in changes if key not in kind.updatable
            }
            errors.update(_secret_errors(changes))
            if resource.kind == ResourceKind.DATABASE_USER:
                errors.update(_db_user_errors(changes))
            if "maxmemory" in changes and not _MAXMEMORY_RE.match(str(changes["maxmemory"])):
                errors["maxmemory"] = "Max memory must be a size such as 256mb or 1gb."
            if resource.kind in _COMMAND_KINDS and "command" in changes:
                msg = self.guard.check_command(changes["command"])
                if msg:
                    errors["command"] = msg
            if "user" in changes and not _UNIX_USER_RE.match(str(changes["user"])):
                errors["user"] = _USER_MESSAGE
            if "port" in changes:
                msg = self.guard.check_port(resource.server_id, resource.kind, changes["port"], exclude_id=resource.id)
                if msg:
                    errors["port"] = msg
            raise_if(errors)
            if "port" in changes:
                changes["port"] = str(changes["port"]).strip()
            resource.pending_changes = changes
            status.apply(resource, Operation.UPDATE)
            resource.updated_at = now()
            self.store.save(resource)
        self._enqueue(Operation.UPDATE, resource)
        return resource

    def remove(self, resource_id: str) -> Resource:
        with self.store.lock:
            resource = self._resource(resource_id)
            raise_if(self.guard.check_remove(resource))
            status.apply(resource, Operation.REMOVE)
            resource.updated_at = now()
            self.store.save(resource)
        self._enqueue(Operation.REMOVE, resource)
        return resource

    def retry(self, resource_id: str) -> Resource:
        with self.store.lock:
            resource = self._resource(resource_id)
            op = status.retried_operation(resource)
            if op == Operation.INSTALL:
                # Failed records hold neither their category nor their port.
                raise_if(self.guard.check_install(
                    resource.server_id, resource.kind, resource.version, resource.port, exclude_id=resource.id,
                ))
            status.apply(resource, Operation.RETRY)
            resource.updated_at = now()
            self.store.save(resource)
        self._enqueue(op, resource)
        return resource

    def cancel_update(self, resource_id: str) -> Resource:
        with self.store.lock:
            resource = self._resource(resource_id)
            status.apply(resource, Operation.CANCEL_UPDATE)
            resource.updated_at = now()
            self.store.save(resource)
        log(f"server-{resource.server_id}", f"update of {resource.kind.value} #{resource.id} cancelled")
        return resource

    def _toggle(self, resource_id: str, op: Operation) -> Resource:
        resource = self._resource(resource_id)
        if not spec_for(resource.kind).supports_pause:
            raise ValidationError({"type": f"{spec_for(resource.kind).label.capitalize()} cannot be paused."})
        status.ensure_transition(resource, op)
        self._enqueue(op, resource)
        return resource

    def pause(self, resource_id: str) -> Resource:
        return self._toggle(resource_id, Operation.PAUSE)

    def resume(self, resource_id: str) -> Resource:
        return self._toggle(resource_id, Operation.RESUME)

    def set_default(self, resource_id: str, flag: str = "is_default") -> Resource:
        """Move a default flag to ``resource`` and away from its siblings.

        The switch on the host runs first; records only change once it worked.
        """
        resource = self._resource(resource_id)
        flags = spec_for(resource.kind).default_flags
        if flag not in flags:
            raise ValidationError({"type": f"{spec_for(resource.kind).label} has no {flag} flag."})
        if resource.status != TaskStatus.ACTIVE:
            raise StateConflictError(f"Cannot set default while {resource.status.value}.")

        command = None
        if resource.kind == ResourceKind.PHP and flag == "is_cli_default":
            command = f"update-alternatives --set php /usr/bin/php{resource.version}"
        elif resource.kind == ResourceKind.NODE:
            command = f"n {resource.version}"
        if command:
            server = self._server(resource.server_id)
            failed = first_failure(self.transport.execute(server, [command]))
            if failed is not None:
                raise to_error(failed)

        with self.store.lock:
            resource = self._resource(resource_id)
            changed = [resource]
            for other in self.store.resources(resource.server_id, resource.kind):
                if other.id != resource.id and getattr(other, flag):
                    setattr(other, flag, False)
                    changed.append(other)
            setattr(resource, flag, True)
            self.store.save_many(*changed)
        log(f"server-{resource.server_id}", f"{resource.kind.value} {resource.version} is now {flag}")
        return resource
