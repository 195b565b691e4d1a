"""Git deployments into timestamped releases.

Layout on the host, per site::

    {deployments_root}/{domain}/
        releases/20250101-120000-3f9c1a2b/  one checkout per deployment
        shared/                             storage, vendor, node_modules, public/build, .env
        current -> releases/...             switched only after a release fully built
"""
import shlex
import time
from typing import List, Optional

from hostforge.core.config_store import AppConfig
from hostforge.core.errors import StateConflictError, ValidationError
from hostforge.core.logging import log
from hostforge.core.store import Store
from hostforge.deploy.models import Deployment, PruneResult, PushEvent, Site
from hostforge.servers.models import Server, now
from hostforge.tasks.classify import to_error
from hostforge.tasks.jobs import Job, JobContext, register_job
from hostforge.tasks.status import TaskStatus
from hostforge.transport.base import (
    CommandLike, Transport, best_effort, first_failure, joined_errors, joined_output,
)

SHARED_DIRS = ("storage", "vendor", "node_modules", "public/build")
SHARED_FILES = (".env",)

REV_PARSE = "git rev-parse HEAD"


def site_root(config: AppConfig, site: Site) -> str:
    return f"{config.deployments_root.rstrip('/')}/{site.domain}"


def release_name(deployment_id: str) -> str:
    """Sortable timestamp plus the deployment id, unique even within one second."""
    return f"{now().strftime('%Y%m%d-%H%M%S')}-{deployment_id[:8]}"


def script_lines(script: str) -> List[str]:
    lines = []
    for raw in (script or "").splitlines():
        line = raw.strip()
        if line and not line.startswith("#"):
            lines.append(line)
    return lines


def resolve_placeholders(line: str, php_version: Optional[str], node_version: Optional[str] = None) -> str:
    php = f"/usr/bin/php{php_version}" if php_version else "php"
    line = line.replace("{composer}", f"{php} /usr/local/bin/composer")
    line = line.replace("{php}", php)
    if node_version:
        line = line.replace("{node}", f"/usr/local/n/versions/node/{node_version}/bin/node")
    else:
        line = line.replace("{node}", "node")
    return line


def _up(path: str) -> str:
    """Relative path from ``releases/X/path`` back to the site root."""
    return "../" * (path.count("/") + 2)


def relink_commands(release: str) -> List[CommandLike]:
    cmds: List[CommandLike] = []
    for d in SHARED_DIRS:
        target = f"{release}/{d}"
        cmds.append(f"rm -rf {shlex.quote(target)}")
        if "/" in d:
            cmds.append(f"mkdir -p {shlex.quote(target.rsplit('/', 1)[0])}")
        cmds.append(f"ln -sfn {_up(d)}shared/{d} {shlex.quote(target)}")
    for f in SHARED_FILES:
        target = f"{release}/{f}"
        cmds.append(f"rm -f {shlex.quote(target)}")
        cmds.append(f"ln -sfn {_up(f)}shared/{f} {shlex.quote(target)}")
    return cmds


def deployment_commands(site: Site, release: str, root: str, script: str,
                        node_version: Optional[str] = None) -> List[CommandLike]:
    shared = f"{root}/shared"
    q_release = shlex.quote(release)
    cmds: List[CommandLike] = [
        f"mkdir -p {shlex.quote(root + '/releases')} " + " ".join(shlex.quote(f"{shared}/{d}") for d in SHARED_DIRS),
        f"touch {shlex.quote(shared + '/.env')}",
        f"git clone --depth 1 -b {shlex.quote(site.git.branch)} {shlex.quote(site.git.repository)} {q_release}",
    ]
    cmds += relink_commands(release)
    for line in script_lines(script):
        cmds.append(f"cd {q_release} && {resolve_placeholders(line, site.php_version, node_version)}")
    cmds.append(f"cd {q_release} && {REV_PARSE}")
    cmds.append(f"ln -sfn {q_release} {shlex.quote(root + '/current')}")
    return cmds


@register_job
class DeploymentJob(Job):
    type_name = "deployment"

    def __init__(self, deployment_id: str):
        super().__init__()
        self.deployment_id = deployment_id
        self._site_id: Optional[str] = None

    def params(self):
        return {"deployment_id": self.deployment_id}

    @property
    def scope(self) -> str:
        return f"site-{self._site_id}" if self._site_id else "worker"

    def run(self, ctx: JobContext):
        store = ctx.store
        with store.lock:
            dep = store.get(Deployment, self.deployment_id)
            if dep is None or dep.status != TaskStatus.PENDING:
                log("worker", f"skip deployment {self.deployment_id}: no longer pending")
                return
            site = store.get(Site, dep.site_id)
            server = store.get_server(dep.server_id)
            if site is None or server is None or site.git is None:
                dep.status = TaskStatus.FAILED
                dep.error_output = "Site, server or repository no longer exists."
                dep.completed_at = now()
                store.save(dep)
                return
            self._site_id = site.id
            root = site_root(ctx.config, site)
            release = f"{root}/releases/{release_name(dep.id)}"
            dep.status = TaskStatus.UPDATING
            dep.started_at = now()
            dep.deployment_path = release
            store.save(dep)
            node = store.get_resource(site.node_id)

        log(self.scope, f"Deployment #{dep.id} started for {site.domain} into {release}")
        start = time.monotonic()
        commands = deployment_commands(site, release, root, dep.deployment_script, node.version if node else None)
        results = ctx.transport.execute(server, commands)
        duration_ms = int((time.monotonic() - start) * 1000)
        failed = first_failure(results)

        with store.lock:
            dep = store.require(Deployment, self.deployment_id)
            dep.output = joined_output(results)
            dep.stderr_output = joined_errors(results)
            dep.duration_ms = duration_ms
            dep.completed_at = now()
            if failed is not None:
                error = to_error(failed)
                dep.status = TaskStatus.FAILED
                dep.exit_code = failed.exit_code
                dep.error_output = error.error_log()
                store.save(dep)
                log(self.scope, f"Deployment #{dep.id} failed for {site.domain}: {error.message}", level="error")
                return

            sha = next((r.stdout.strip() for r in results if r.command.endswith(REV_PARSE)), "") or None
            dep.status = TaskStatus.SUCCESS
            dep.exit_code = 0
            dep.commit_sha = sha or dep.commit_sha
            site = store.require(Site, site.id)
            site.active_deployment_id = dep.id
            site.last_deployment_sha = dep.commit_sha
            site.last_deployed_at = dep.completed_at
            store.save_many(dep, site)
        log(self.scope, f"Deployment #{dep.id} completed for {site.domain} ({dep.commit_sha}, {duration_ms}ms)")


class DeploymentService:
    def __init__(self, store: Store, queue, transport: Transport, config: AppConfig):
        self.store = store
        self.queue = queue
        self.transport = transport
        self.config = config

    def deploy(self, site_id: str, triggered_by: str = "manual", push: Optional[PushEvent] = None) -> Deployment:
        with self.store.lock:
            site = self.store.require(Site, site_id)
            if site.git is None or not site.git.repository:
                raise ValidationError({"git": "Site has no git repository configured."})
            running = [d for d in self.store.deployments(site.id) if d.status in (TaskStatus.PENDING, TaskStatus.UPDATING)]
            if running:
                raise StateConflictError("A deployment is already in progress for this site.")
            dep = Deployment(
                site_id=site.id,
                server_id=site.server_id,
                deployment_script=site.deployment_script,
                branch=site.git.branch,
                triggered_by=triggered_by,
            )
            if push is not None:
                dep.commit_sha = push.commit_sha
                dep.commit_message = push.message
                dep.commit_author = push.author
            self.store.save(dep)
        self.queue.submit(DeploymentJob(dep.id))
        log(f"site-{site.id}", f"Deployment #{dep.id} queued ({triggered_by})")
        return dep

    def rollback(self, site_id: str, deployment_id: str) -> Site:
        site = self.store.require(Site, site_id)
        target = self.store.require(Deployment, deployment_id)
        if target.site_id != site.id or not target.can_rollback:
            raise ValidationError({"deployment": "Cannot rollback to this deployment - deployment path not found or deployment failed."})
        if site.active_deployment_id == target.id:
            raise StateConflictError("This deployment is already active.")
        server = self.store.require(Server, site.server_id)
        root = site_root(self.config, site)
        path = shlex.quote(target.deployment_path)
        commands: List[CommandLike] = [
            f"test -d {path}",
            f"ln -sfn {path} {shlex.quote(root + '/current')}",
        ]
        if site.php_version:
            commands.append(best_effort(f"service php{site.php_version}-fpm reload"))
        failed = first_failure(self.transport.execute(server, commands))
        if failed is not None:
            log(f"site-{site.id}", f"Rollback to deployment #{target.id} failed", level="error")
            raise to_error(failed)

        with self.store.lock:
            site = self.store.require(Site, site_id)
            site.active_deployment_id = target.id
            site.last_deployment_sha = target.commit_sha
            site.last_deployed_at = now()
            self.store.save(site)
        log(f"site-{site.id}", f"Rolled back to deployment #{target.id}")
        return site

    def prune(self, site_id: str, keep: Optional[int] = None) -> PruneResult:
        keep = self.config.releases_kept if keep is None else keep
        site = self.store.require(Site, site_id)
        result = PruneResult(site_id=site.id)
        kept = [d for d in self.store.deployments(site.id) if d.status == TaskStatus.SUCCESS and d.deployment_path]
        stale = [d for d in kept[keep:] if d.id != site.active_deployment_id]
        if not stale:
            return result
        server = self.store.require(Server, site.server_id)
        for dep in stale:
            res = self.transport.execute(server, [f"rm -rf {shlex.quote(dep.deployment_path)}"])
            if first_failure(res) is not None:
                result.failed.append(dep.id)
                log(f"site-{site.id}", f"Failed to delete release {dep.deployment_path}", level="warning")
                continue
            with self.store.lock:
                fresh = self.store.require(Deployment, dep.id)
                fresh.deployment_path = None
                self.store.save(fresh)
            result.deleted.append(dep.id)
        log(f"site-{site.id}", f"Pruned {len(result.deleted)} releases, kept {keep}")
        return result

    def status(self, deployment_id: str) -> dict:
        return self.store.require(Deployment, deployment_id).summary()
