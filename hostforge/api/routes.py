# hostforge/api/routes.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from hostforge.api.models import ResourceCreate, ResourceUpdate, ServerCreate, SetDefaultRequest
from hostforge.core.logging import log, read_log
from hostforge.runtime import Runtime, get_runtime
from hostforge.servers.models import Resource, ResourceKind, Server

router = APIRouter()


def server_out(s: Server) -> dict:
    return s.model_dump(mode="json", exclude={"root_password"})


def resource_out(r: Resource) -> dict:
    data = r.model_dump(mode="json")
    secrets = [k for k in data["config"] if "password" in k]
    for k in secrets:
        data["config"][k] = "********"
    return data


# ---------------- servers ----------------
@router.get("/servers")
def list_servers(rt: Runtime = Depends(get_runtime)):
    return {"servers": [server_out(s) for s in rt.store.list(Server)]}


@router.post("/servers", status_code=201)
def create_server(req: ServerCreate, rt: Runtime = Depends(get_runtime)):
    server = Server(**req.model_dump())
    rt.store.save(server)
    log(f"server-{server.id}", f"Server #{server.id} ({server.public_ip}) created")
    return {
        "server": server_out(server),
        "provision_script_url": rt.provision.script_url(server),
    }


@router.get("/servers/{server_id}")
def get_server(server_id: str, rt: Runtime = Depends(get_runtime)):
    return server_out(rt.store.require(Server, server_id))


@router.delete("/servers/{server_id}")
def delete_server(server_id: str, rt: Runtime = Depends(get_runtime)):
    rt.store.require(Server, server_id)
    rt.store.delete_server(server_id)
    log(f"server-{server_id}", f"Server #{server_id} deleted")
    return {"status": "ok"}


@router.get("/servers/{server_id}/logs")
def server_logs(server_id: str, lines: int = 200):
    return {"lines": read_log(f"server-{server_id}", lines)}


# ---------------- resources ----------------
@router.get("/servers/{server_id}/resources")
def list_resources(server_id: str, kind: Optional[ResourceKind] = None, rt: Runtime = Depends(get_runtime)):
    rt.store.require(Server, server_id)
    kinds = (kind,) if kind else ()
    return {"resources": [resource_out(r) for r in rt.store.resources(server_id, *kinds)]}


@router.post("/servers/{server_id}/resources", status_code=202)
def install_resource(server_id: str, req: ResourceCreate, rt: Runtime = Depends(get_runtime)):
    data = req.model_dump(exclude={"kind"}, exclude_none=True)
    resource = rt.lifecycle.install(server_id, req.kind, **data)
    return resource_out(resource)


@router.get("/servers/{server_id}/ports/next")
def next_port(server_id: str, kind: ResourceKind, rt: Runtime = Depends(get_runtime)):
    rt.store.require(Server, server_id)
    port = rt.guard.next_available_port(server_id, kind)
    if port is None:
        raise HTTPException(status_code=400, detail=f"{kind.value} does not listen on a port")
    return {"kind": kind.value, "port": port}


@router.get("/resources/{resource_id}")
def get_resource(resource_id: str, rt: Runtime = Depends(get_runtime)):
    return resource_out(rt.store.require(Resource, resource_id))


@router.patch("/resources/{resource_id}", status_code=202)
def update_resource(resource_id: str, req: ResourceUpdate, rt: Runtime = Depends(get_runtime)):
    return resource_out(rt.lifecycle.update(resource_id, req.changes()))


@router.delete("/resources/{resource_id}", status_code=202)
def remove_resource(resource_id: str, rt: Runtime = Depends(get_runtime)):
    return resource_out(rt.lifecycle.remove(resource_id))


@router.post("/resources/{resource_id}/retry", status_code=202)
def retry_resource(resource_id: str, rt: Runtime = Depends(get_runtime)):
    return resource_out(rt.lifecycle.retry(resource_id))


@router.post("/resources/{resource_id}/cancel-update")
def cancel_update(resource_id: str, rt: Runtime = Depends(get_runtime)):
    return resource_out(rt.lifecycle.cancel_update(resource_id))


@router.post("/resources/{resource_id}/pause", status_code=202)
def pause_resource(resource_id: str, rt: Runtime = Depends(get_runtime)):
    return resource_out(rt.lifecycle.pause(resource_id))


@router.post("/resources/{resource_id}/resume", status_code=202)
def resume_resource(resource_id: str, rt: Runtime = Depends(get_runtime)):
    return resource_out(rt.lifecycle.resume(resource_id))


@router.post("/resources/{resource_id}/default")
def set_default(resource_id: str, req: SetDefaultRequest, rt: Runtime = Depends(get_runtime)):
    return resource_out(rt.lifecycle.set_default(resource_id, req.flag))
