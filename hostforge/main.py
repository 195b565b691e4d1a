from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hostforge.api.deploy_routes import router as deploy_router
from hostforge.api.provision_routes import router as provision_router
from hostforge.api.routes import router as api_router
from hostforge.core.config_store import AppConfig, load_app_config
from hostforge.core.errors import HostforgeError
from hostforge.core.logging import log
from hostforge.runtime import Runtime
from hostforge.transport.base import Transport


def create_app(config: Optional[AppConfig] = None, transport: Optional[Transport] = None,
               start_workers: bool = True) -> FastAPI:
    cfg = config or load_app_config()
    app = FastAPI(title="hostforge")
    app.state.runtime = Runtime(cfg, transport)

    @app.exception_handler(HostforgeError)
    async def _hostforge_error(request: Request, exc: HostforgeError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.on_event("startup")
    def startup_event():
        rt: Runtime = app.state.runtime
        restored = rt.tasks.restore_from_disk()
        if start_workers:
            rt.tasks.start()
        log("startup", f"hostforge ready, {restored} queued jobs restored")

    @app.on_event("shutdown")
    def shutdown_event():
        app.state.runtime.tasks.stop()

    app.include_router(api_router)
    app.include_router(provision_router)
    app.include_router(deploy_router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
