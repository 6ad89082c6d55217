import os
from typing import Awaitable, Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from warden.config import AppConfig
from warden.core.dedup import DedupCache
from warden.core.scheduler import DeletionScheduler
from warden.storage.audit import AuditLog


def _require_admin(config: AppConfig):
    expected = os.getenv(config.admin.token_env, "")

    async def verifier(request: Request):
        token = request.headers.get("X-Admin-Token")
        if not expected or token != expected:
            raise HTTPException(status_code=401, detail="unauthorized")
        return True

    return verifier


def create_admin_app(
    config: AppConfig,
    cache: DedupCache,
    scheduler: Optional[DeletionScheduler],
    audit_log: AuditLog,
    catch_up: Callable[[], Awaitable[int]],
) -> FastAPI:
    app = FastAPI(title="ChannelWarden Admin", docs_url=None, redoc_url=None)

    verifier = _require_admin(config)

    @app.get("/api/status")
    async def status(_: bool = Depends(verifier)):
        state = await cache.snapshot()
        return {
            "channel_id": config.channel_id,
            "dedup": {
                "enabled": config.dedup.enabled,
                "keys": len(state.seen_keys),
                "high_water_mark": state.high_water_mark,
            },
            "fleeting": {
                "enabled": scheduler is not None,
                "delay_seconds": config.fleeting.delay_seconds,
                "worker_running": scheduler.running if scheduler else False,
                "pending": [t.to_dict() for t in scheduler.pending()] if scheduler else [],
                "dead_letters": [t.to_dict() for t in scheduler.dead_letters]
                if scheduler
                else [],
            },
        }

    @app.get("/api/logs")
    async def logs(limit: int = 50, _: bool = Depends(verifier)):
        return {"audit": audit_log.recent(limit)}

    @app.post("/api/catch-up")
    async def trigger_catch_up(_: bool = Depends(verifier)):
        processed = await catch_up()
        audit_log.add("admin_catch_up", {"processed": processed})
        return {"ok": True, "processed": processed}

    @app.post("/api/dead-letters/requeue")
    async def requeue_dead_letters(_: bool = Depends(verifier)):
        if scheduler is None:
            raise HTTPException(409, "fleeting deletion is disabled")
        revived = await scheduler.requeue_dead_letters()
        audit_log.add("admin_requeue", {"count": revived})
        return {"ok": True, "requeued": revived}

    @app.exception_handler(HTTPException)
    async def http_exc(_, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    return app
