from fastapi import APIRouter, Depends, Request, Response

from hostforge.provision.protocol import last_event_at, step_list
from hostforge.provision.script import render_script
from hostforge.runtime import Runtime, get_runtime
from hostforge.servers.models import Server

router = APIRouter()


@router.get("/servers/{server_id}/provision")
def provision_status(server_id: str, rt: Runtime = Depends(get_runtime)):
    server = rt.store.require(Server, server_id)
    last = last_event_at(server)
    return {
        "server_id": server.id,
        "connection_status": server.connection_status.value,
        "provision_status": server.provision_status.value,
        "steps": step_list(server),
        "events": server.events,
        "last_event_at": last.isoformat() if last else None,
        "script_url": rt.provision.script_url(server),
    }


@router.get("/servers/{server_id}/provision/script")
def provision_script(server_id: str, rt: Runtime = Depends(get_runtime)):
    server = rt.store.require(Server, server_id)
    script = render_script(server, rt.provision.step_url(server), rt.config.app_user, rt.config.public_key)
    return Response(
        content=script,
        media_type="text/x-shellscript; charset=utf-8",
        headers={"X-Content-Type-Options": "nosniff"},
    )


async def _callback_fields(request: Request) -> dict:
    ctype = request.headers.get("content-type", "")
    if "application/json" in ctype:
        try:
            data = await request.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    if "form" in ctype:
        form = await request.form()
        return dict(form)
    return {}


@router.post("/servers/{server_id}/provision/step")
async def provision_step(server_id: str, request: Request, rt: Runtime = Depends(get_runtime)):
    query = dict(request.query_params)
    rt.provision.verify(server_id, query)
    body = await _callback_fields(request)
    step = query.get("step", body.get("step"))
    status = query.get("status", body.get("status"))
    rt.provision.record_step(server_id, step, status)
    return {"ok": True}


@router.post("/servers/{server_id}/provision/retry")
def provision_retry(server_id: str, rt: Runtime = Depends(get_runtime)):
    server = rt.provision.retry(server_id)
    return {
        "server_id": server.id,
        "provision_status": server.provision_status.value,
        "connection_status": server.connection_status.value,
        "script_url": rt.provision.script_url(server),
    }
