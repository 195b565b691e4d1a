import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from hostforge.api.models import PruneRequest, RollbackRequest, SiteCreate, SiteUpdate
from hostforge.core.errors import StateConflictError, ValidationError
from hostforge.core.logging import log, read_log
from hostforge.deploy.models import DEFAULT_DEPLOYMENT_SCRIPT, Deployment, Site
from hostforge.deploy.webhook import EVENT_HEADER, SIGNATURE_HEADER
from hostforge.runtime import Runtime, get_runtime
from hostforge.servers.models import ResourceKind, Server
from hostforge.tasks.kinds import spec_for
from hostforge.tasks.status import TaskStatus

router = APIRouter()


def _check_links(rt: Runtime, server_id: str, database_id: Optional[str], node_id: Optional[str]):
    errors = {}
    if database_id:
        db = rt.store.get_resource(database_id)
        if db is None or db.server_id != server_id or spec_for(db.kind).category != "database":
            errors["database"] = "Select a database installed on this server."
    if node_id:
        node = rt.store.get_resource(node_id)
        if node is None or node.server_id != server_id or node.kind != ResourceKind.NODE:
            errors["node"] = "Select a Node.js version installed on this server."
    if errors:
        raise ValidationError(errors)


def site_out(s: Site) -> dict:
    return s.model_dump(mode="json", exclude={"webhook_secret"})


# ---------------- sites ----------------
@router.get("/servers/{server_id}/sites")
def list_sites(server_id: str, rt: Runtime = Depends(get_runtime)):
    rt.store.require(Server, server_id)
    return {"sites": [site_out(s) for s in rt.store.sites(server_id)]}


@router.post("/servers/{server_id}/sites", status_code=201)
def create_site(server_id: str, req: SiteCreate, rt: Runtime = Depends(get_runtime)):
    rt.store.require(Server, server_id)
    if any(s.domain == req.domain for s in rt.store.sites(server_id)):
        raise ValidationError({"domain": "This domain already exists on this server."})
    _check_links(rt, server_id, req.database_id, req.node_id)
    site = Site(
        server_id=server_id,
        domain=req.domain,
        document_root=req.document_root or f"{rt.config.deployments_root}/{req.domain}/current/public",
        php_version=req.php_version,
        node_id=req.node_id,
        database_id=req.database_id,
        git=req.git,
        deployment_script=req.deployment_script or DEFAULT_DEPLOYMENT_SCRIPT,
        auto_deploy=req.auto_deploy,
        webhook_secret=req.webhook_secret or secrets.token_hex(20),
    )
    rt.store.save(site)
    log(f"site-{site.id}", f"Site {site.domain} created on server #{server_id}")
    # The secret is only ever shown once.
    return {"site": site_out(site), "webhook_secret": site.webhook_secret}


@router.get("/sites/{site_id}")
def get_site(site_id: str, rt: Runtime = Depends(get_runtime)):
    return site_out(rt.store.require(Site, site_id))


@router.patch("/sites/{site_id}")
def update_site(site_id: str, req: SiteUpdate, rt: Runtime = Depends(get_runtime)):
    with rt.store.lock:
        site = rt.store.require(Site, site_id)
        changes = req.model_dump(exclude_none=True)
        _check_links(rt, site.server_id, changes.get("database_id"), changes.get("node_id"))
        if req.git is not None:
            changes["git"] = req.git
        site = site.model_copy(update=changes)
        rt.store.save(site)
    return site_out(site)


@router.delete("/sites/{site_id}")
def delete_site(site_id: str, rt: Runtime = Depends(get_runtime)):
    with rt.store.lock:
        site = rt.store.require(Site, site_id)
        deployments = rt.store.deployments(site.id)
        if any(d.status in (TaskStatus.PENDING, TaskStatus.UPDATING) for d in deployments):
            raise StateConflictError("Cannot delete a site while a deployment is running.")
        for d in deployments:
            rt.store.delete(Deployment, d.id)
        rt.store.delete(Site, site.id)
    log(f"site-{site_id}", f"Site {site.domain} deleted")
    return {"status": "ok"}


@router.get("/sites/{site_id}/logs")
def site_logs(site_id: str, lines: int = 200):
    return {"lines": read_log(f"site-{site_id}", lines)}


# ---------------- deployments ----------------
@router.post("/sites/{site_id}/deployments", status_code=202)
def deploy_site(site_id: str, rt: Runtime = Depends(get_runtime)):
    dep = rt.deployments.deploy(site_id, triggered_by="manual")
    return dep.model_dump(mode="json")


@router.get("/sites/{site_id}/deployments")
def list_deployments(site_id: str, rt: Runtime = Depends(get_runtime)):
    site = rt.store.require(Site, site_id)
    return {
        "active_deployment_id": site.active_deployment_id,
        "deployments": [d.summary() for d in rt.store.deployments(site.id)],
    }


@router.get("/deployments/{deployment_id}")
def get_deployment(deployment_id: str, rt: Runtime = Depends(get_runtime)):
    dep = rt.store.require(Deployment, deployment_id)
    data = dep.model_dump(mode="json")
    data.update(dep.summary())
    data["can_rollback"] = dep.can_rollback
    return data


@router.get("/deployments/{deployment_id}/status")
def deployment_status(deployment_id: str, rt: Runtime = Depends(get_runtime)):
    return rt.deployments.status(deployment_id)


@router.post("/sites/{site_id}/rollback")
def rollback(site_id: str, req: RollbackRequest, rt: Runtime = Depends(get_runtime)):
    return site_out(rt.deployments.rollback(site_id, req.deployment_id))


@router.post("/sites/{site_id}/prune")
def prune(site_id: str, req: PruneRequest, rt: Runtime = Depends(get_runtime)):
    return rt.deployments.prune(site_id, req.keep).model_dump()


# ---------------- source control ----------------
@router.post("/sites/{site_id}/webhook")
async def webhook(
    site_id: str,
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    event: Optional[str] = Header(default=None, alias=EVENT_HEADER),
    rt: Runtime = Depends(get_runtime),
):
    body = await request.body()
    return rt.webhooks.handle(site_id, event, body, signature)
