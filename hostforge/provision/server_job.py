from typing import Callable, List, Optional

from hostforge.core.logging import log
from hostforge.servers.models import ConnectionStatus, ProvisionStatus, Resource, ResourceKind, Server, StepStatus, now
from hostforge.tasks.classify import to_error
from hostforge.tasks.jobs import Job, JobContext, register_job
from hostforge.tasks.kinds import KindContext, spec_for
from hostforge.tasks.status import TaskStatus
from hostforge.transport.base import CommandLike, best_effort, first_failure


def final_touches(app_user: str, deployments_root: str) -> List[CommandLike]:
    return [
        f"mkdir -p {deployments_root}",
        f"chown -R {app_user}:{app_user} {deployments_root}",
        "DEBIAN_FRONTEND=noninteractive apt-get install -y supervisor",
        "systemctl enable supervisor",
        best_effort("systemctl restart supervisor"),
        best_effort("apt-get autoremove -y"),
    ]


@register_job
class ServerProvisionJob(Job):
    """Steps 4-8 of the bootstrap, run over SSH once the host reported step 3.

    Each step either completes or marks itself and the whole bootstrap
    failed, later steps are then left pending.
    """

    type_name = "server_provision"

    def __init__(self, server_id: str):
        super().__init__()
        self.server_id = server_id

    def params(self):
        return {"server_id": self.server_id}

    @property
    def scope(self) -> str:
        return f"server-{self.server_id}"

    def _mark(self, ctx: JobContext, step: int, st: StepStatus, *resources: Resource, bootstrap: Optional[ProvisionStatus] = None) -> Server:
        with ctx.store.lock:
            server = ctx.store.require(Server, self.server_id)
            server.provision[step] = st
            if bootstrap is not None:
                server.provision_status = bootstrap
            server.updated_at = now()
            ctx.store.save_many(server, *resources)
        level = "error" if st == StepStatus.FAILED else "info"
        log(self.scope, f"Provision step {step} updated to {st.value} for server #{self.server_id}", level=level)
        return server

    def _run_step(self, ctx: JobContext, step: int, build: Callable[[Server], List[CommandLike]],
                  resource: Optional[Resource] = None, on_success: Optional[Callable[[Resource], None]] = None) -> bool:
        server = self._mark(ctx, step, StepStatus.INSTALLING, *([resource] if resource else []))
        results = ctx.transport.execute(server, build(server))
        failed = first_failure(results)
        if failed is not None:
            classify = spec_for(resource.kind).classify if resource else None
            error = to_error(failed, classify)
            if resource is not None:
                resource.status = TaskStatus.FAILED
                resource.error_log = error.error_log()
                resource.updated_at = now()
            self._mark(ctx, step, StepStatus.FAILED, *([resource] if resource else []), bootstrap=ProvisionStatus.FAILED)
            log(self.scope, f"Provision step {step} failed for server #{self.server_id}: {error.message}", level="error")
            return False
        if resource is not None:
            resource.status = TaskStatus.ACTIVE
            resource.updated_at = now()
            if on_success:
                on_success(resource)
        self._mark(ctx, step, StepStatus.COMPLETED, *([resource] if resource else []))
        return True

    def _resource_step(self, ctx: JobContext, step: int, resource: Resource,
                       on_success: Optional[Callable[[Resource], None]] = None) -> bool:
        kind = spec_for(resource.kind)
        resource.status = TaskStatus.INSTALLING
        app_user = ctx.config.app_user
        return self._run_step(
            ctx, step,
            lambda server: kind.install(resource, KindContext(server, None, app_user)),
            resource, on_success,
        )

    def run(self, ctx: JobContext):
        server = ctx.store.get_server(self.server_id)
        if server is None or server.provision_status != ProvisionStatus.INSTALLING:
            log("worker", f"skip provisioning of server {self.server_id}: not installing")
            return
        if server.step(4) in (StepStatus.COMPLETED, StepStatus.FAILED):
            log("worker", f"skip provisioning of server {self.server_id}: already handled")
            return

        ok = self._run_step(ctx, 4, lambda s: ["whoami"])
        with ctx.store.lock:
            server = ctx.store.require(Server, self.server_id)
            server.connection_status = ConnectionStatus.CONNECTED if ok else ConnectionStatus.FAILED
            ctx.store.save(server)
        if not ok:
            return

        cfg = ctx.config
        firewall = Resource(server_id=self.server_id, kind=ResourceKind.FIREWALL, name="default", is_default=True)
        if not self._resource_step(ctx, 5, firewall):
            return

        php = Resource(
            server_id=self.server_id,
            kind=ResourceKind.PHP,
            version=cfg.default_php_version,
            config={"claims_default": True},
        )

        def php_defaults(r: Resource):
            r.config.pop("claims_default", None)
            for flag in spec_for(ResourceKind.PHP).default_flags:
                setattr(r, flag, True)

        if not self._resource_step(ctx, 6, php, php_defaults):
            return

        proxy = Resource(
            server_id=self.server_id,
            kind=ResourceKind.REVERSE_PROXY,
            name="nginx",
            config={"php_version": cfg.default_php_version},
        )
        if not self._resource_step(ctx, 7, proxy):
            return

        if not self._run_step(ctx, 8, lambda s: final_touches(cfg.app_user, cfg.deployments_root)):
            return

        with ctx.store.lock:
            server = ctx.store.require(Server, self.server_id)
            server.provision_status = ProvisionStatus.COMPLETED
            server.updated_at = now()
            ctx.store.save(server)
        log(self.scope, f"Server #{self.server_id} provisioned")
