# hostforge/provision/protocol.py
"""Host-driven bootstrap callbacks.

The freshly booted host runs the provisioning script and reports steps 1-3
back through one signed URL. Once step 3 completes the remaining steps are
driven from our side by :class:`ServerProvisionJob`.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from hostforge.core.config_store import AppConfig
from hostforge.core.errors import HostforgeError, StateConflictError
from hostforge.core.logging import log
from hostforge.core.signing import LinkSigner
from hostforge.core.store import Store
from hostforge.provision.server_job import ServerProvisionJob
from hostforge.servers.models import (
    HOST_REPORTED_STEPS,
    PROVISION_STEPS,
    ConnectionStatus,
    ProvisionStatus,
    Resource,
    Server,
    StepStatus,
    generate_password,
    now,
)

STEP_SCOPE = "provision.step"

STATUS_ALIASES = {"success": StepStatus.COMPLETED.value}


class CallbackError(HostforgeError):
    """Malformed step callback; answered with 400, nothing is written."""


def parse_step(step: Any) -> int:
    try:
        n = int(str(step).strip())
    except (TypeError, ValueError):
        raise CallbackError("Invalid provision step.")
    if n not in HOST_REPORTED_STEPS:
        raise CallbackError("Invalid provision step.")
    return n


def parse_status(value: Any) -> StepStatus:
    text = str(value or "").strip().lower()
    text = STATUS_ALIASES.get(text, text)
    try:
        return StepStatus(text)
    except ValueError:
        raise CallbackError("Invalid provision status.")


class ProvisionProtocol:
    def __init__(self, store: Store, signer: LinkSigner, queue, config: AppConfig):
        self.store = store
        self.signer = signer
        self.queue = queue
        self.config = config

    def step_url(self, server: Server) -> str:
        base = self.config.callback_base_url.rstrip("/")
        return self.signer.sign_url(f"{base}/servers/{server.id}/provision/step", STEP_SCOPE, server.id)

    def script_url(self, server: Server) -> str:
        base = self.config.callback_base_url.rstrip("/")
        return f"{base}/servers/{server.id}/provision/script"

    def verify(self, server_id: str, query: Dict[str, str]):
        self.signer.verify(STEP_SCOPE, server_id, query)

    def record_step(self, server_id: str, step: Any, status: Any) -> Server:
        n = parse_step(step)
        st = parse_status(status)
        scope = f"server-{server_id}"

        with self.store.lock:
            server = self.store.require(Server, server_id)
            if n == 1 and st == StepStatus.COMPLETED:
                # Fresh host: nothing we knew about this machine is valid any more.
                for r in self.store.resources(server.id):
                    self.store.delete(Resource, r.id)
                server.provision = {1: StepStatus.COMPLETED}
                server.connection_status = ConnectionStatus.CONNECTED
                server.provision_status = ProvisionStatus.INSTALLING
            else:
                server.provision[n] = st
            if st == StepStatus.FAILED:
                server.provision_status = ProvisionStatus.FAILED

            handoff = n == 3 and st == StepStatus.COMPLETED and server.provision_status != ProvisionStatus.FAILED
            if handoff:
                server.provision[4] = StepStatus.INSTALLING
            server.events.append({"step": n, "status": st.value, "at": now().isoformat()})
            server.updated_at = now()
            self.store.save(server)

        log(scope, f"Provision step {n} updated to {st.value} for server #{server_id}")
        if st == StepStatus.FAILED:
            log(scope, f"Provision step {n} failed for server #{server_id}", level="error")
        if handoff:
            self.queue.submit(ServerProvisionJob(server_id))
        return server

    def retry(self, server_id: str) -> Server:
        with self.store.lock:
            server = self.store.require(Server, server_id)
            if server.provision_status != ProvisionStatus.FAILED:
                raise StateConflictError("Provisioning can only be retried after it has failed.")
            server.root_password = generate_password()
            server.connection_status = ConnectionStatus.PENDING
            server.provision_status = ProvisionStatus.PENDING
            server.events = []
            server.updated_at = now()
            self.store.save(server)
        log(f"server-{server_id}", f"Provisioning retry requested for server #{server_id}")
        return server


def step_list(server: Server) -> List[Dict[str, Any]]:
    res = []
    for n, name in PROVISION_STEPS.items():
        st = server.step(n)
        res.append({
            "step": n,
            "name": name,
            "status": st.value,
            "is_completed": st == StepStatus.COMPLETED,
            "is_pending": st == StepStatus.PENDING,
            "is_failed": st == StepStatus.FAILED,
            "is_installing": st == StepStatus.INSTALLING,
        })
    return res


def last_event_at(server: Server) -> Optional[datetime]:
    if not server.events:
        return None
    return datetime.fromisoformat(server.events[-1]["at"])
