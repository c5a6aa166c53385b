"""
mgtweak: Web Backend
====================
Thin FastAPI server in front of one DeviceSessionOrchestrator.

Usage:
    mgtweak serve [port]
    uvicorn mgtweak.web.server:create_app --factory --port 8080

A patch run happens on a worker thread; poll /api/status and /api/logs for
progress, POST /api/stop to cancel.
"""

import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from ..config import load_settings
from ..container import BinaryContainer
from ..errors import MalformedContainer, MgTweakError, describe_failure
from ..logs import configure_logging, log_error, log_info
from ..models import PatchOperation, PatchRequest
from ..orchestrator import DeviceSessionOrchestrator
from ..patcher import parse_offset


# ─── Pydantic Models ──────────────────────────────────────────────────────────

class ValidateRequest(BaseModel):
    udid: str
    path: str

class PatchBody(BaseModel):
    udid: str
    path: str
    operation: PatchOperation = PatchOperation.USE_AS_IS
    offset: Optional[str] = None  # hex, "0x" optional
    confirm: bool = False         # continue past a build / product type mismatch


# ─── Helpers ──────────────────────────────────────────────────────────────────

def require_device(orch, udid):
    """Raise 404 if the device is not in the last enumeration."""
    device = orch.find_device(udid)
    if device is None:
        orch.refresh_devices()
        device = orch.find_device(udid)
    if device is None:
        raise HTTPException(status_code=404, detail=f"Device {udid} not found")
    return device


def load_container(path):
    try:
        return BinaryContainer.load(path)
    except MalformedContainer as e:
        raise HTTPException(status_code=400, detail=describe_failure(e))
    except OSError as e:
        raise HTTPException(status_code=400, detail=f"Failed to access file: {e}")


def dump_result(result):
    if result is None:
        return None
    return result.model_dump(mode="json", exclude={"container"})


# ─── App Factory ──────────────────────────────────────────────────────────────

def create_app(orchestrator=None, settings=None):
    settings = settings or load_settings()
    orch = orchestrator or DeviceSessionOrchestrator.create(settings)

    @asynccontextmanager
    async def lifespan(app):
        yield
        orch.close()

    app = FastAPI(title="mgtweak", version="1.0.0", lifespan=lifespan)
    app.state.orch = orch
    app.state.worker = None
    app.state.last_result = None
    run_lock = threading.Lock()

    # ─── Devices ───

    @app.get("/api/devices")
    def get_devices():
        devices = orch.refresh_devices()
        return {"devices": [dict(d.model_dump(), display_name=d.display_name) for d in devices]}

    @app.post("/api/validate")
    def validate(req: ValidateRequest):
        device = require_device(orch, req.udid)
        container = load_container(req.path)
        try:
            mismatch = orch.check_container(device, container)
        except MgTweakError as e:
            raise HTTPException(status_code=400, detail=describe_failure(e))
        return {
            "match": mismatch is None,
            "mismatch": mismatch.model_dump() if mismatch else None,
            "message": mismatch.message if mismatch else "",
            "has_cache_data": container.has_blob,
        }

    # ─── Patch ───

    @app.post("/api/patch")
    def patch(body: PatchBody):
        try:
            offset = parse_offset(body.offset)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        request = PatchRequest(operation=body.operation, offset=offset)
        device = require_device(orch, body.udid)

        with run_lock:
            worker = app.state.worker
            if orch.running or (worker is not None and worker.is_alive()):
                raise HTTPException(status_code=409, detail="A patch is already running")

            def _run():
                try:
                    app.state.last_result = orch.run_file(
                        device, body.path, request, confirm=lambda mismatch: body.confirm)
                except Exception as e:
                    log_error(f"Patch worker crashed: {e}")
                    raise

            log_info(f"Patch requested: {body.operation.label} on {device.display_name}")
            app.state.last_result = None
            app.state.worker = threading.Thread(target=_run, name="mgtweak-run", daemon=True)
            app.state.worker.start()
        return {"status": "started", "operation": body.operation.value, "offset": offset}

    @app.post("/api/stop")
    async def stop():
        if not orch.running:
            return {"status": "idle"}
        orch.stop()
        return {"status": "stopping"}

    # ─── Status / Logs ───

    @app.get("/api/status")
    async def status():
        return {
            "running": orch.running,
            "tunnel_state": orch.tunnels.state.value,
            "session": orch.session.model_dump(mode="json"),
            "devices": len(orch.devices),
            "result": dump_result(app.state.last_result),
        }

    @app.get("/api/logs")
    async def get_logs(after: int = 0, cat: str = "", level: str = ""):
        """Log entries from the LogBook. Filters: after=index, cat=SYS|TUNNEL|..., level=info,error,..."""
        entries = orch.logbook.entries(after)
        total = len(orch.logbook)
        if cat:
            cats = cat.upper().split(",")
            entries = [e for e in entries if e.category in cats]
        if level:
            levels = level.lower().split(",")
            entries = [e for e in entries if e.level.value in levels]
        return {"logs": [e.model_dump(mode="json") for e in entries], "total": total}

    return app


def main(port=None):
    import uvicorn
    settings = load_settings()
    configure_logging(settings.log_dir)
    uvicorn.run(create_app(settings=settings), host=settings.web_host, port=port or settings.web_port)


if __name__ == "__main__":
    main()
