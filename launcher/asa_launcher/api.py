from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from . import __version__
from .errors import (
    ConfigValidationError,
    DuplicateNameError,
    InstallBusyError,
    LauncherError,
    NotFoundError,
    PortCollisionError,
)
from .jobs import to_event
from .log_reader import read_from_cursor, read_tail
from .models import AutoShutdownPolicy, ClusterCreateRequest, IniSections, Job, JobEvent, ServerConfig, SharedMod
from .orchestrator import Orchestrator
from .settings import Settings
from .logging_setup import get_logger

log = get_logger("asa.launcher.api")


class ApiResult(BaseModel):
    ok: bool
    detail: Optional[str] = None
    data: Any = None


class RconCommand(BaseModel):
    command: str


class GlobalConfigUpdate(BaseModel):
    game_user_settings: Optional[IniSections] = None
    game_ini: Optional[IniSections] = None


def _status_for(exc: LauncherError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (PortCollisionError, DuplicateNameError, InstallBusyError)):
        return 409
    if isinstance(exc, ConfigValidationError):
        return 400
    return 500


def _job_payload(job: Job) -> Dict:
    return {"ok": True, "jobId": job.id, "job": job.model_dump(mode="json")}


def _results(results) -> ApiResult:
    data = [r.model_dump(mode="json") for r in results]
    return ApiResult(ok=all(r.success for r in results), data=data)


def create_app(settings: Settings, orch: Optional[Orchestrator] = None) -> FastAPI:
    orch = orch or Orchestrator(settings)
    orch.prepare_environment()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await orch.shutdown()

    app = FastAPI(title="ASA Launcher API", version=__version__, lifespan=lifespan)
    app.state.orch = orch

    @app.exception_handler(LauncherError)
    async def launcher_error(_request: Request, exc: LauncherError):
        code = _status_for(exc)
        if code == 500:
            log.error("Request failed: %s", exc)
        return JSONResponse(status_code=code, content={"ok": False, "error": type(exc).__name__, "detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_error(_request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"ok": False, "error": "ValidationError", "detail": str(exc)})

    @app.get("/health")
    def health():
        return {"ok": True, "version": __version__}

    # --- servers ---

    @app.get("/servers")
    async def list_servers():
        return {"ok": True, "servers": await orch.list_servers()}

    @app.post("/servers", status_code=202)
    async def create_server(cfg: ServerConfig, install: bool = Query(default=True)):
        return _job_payload(await orch.create_server(cfg, install=install))

    @app.get("/servers/{name}")
    def get_server(name: str):
        cfg = orch.store.get_server(name)
        return {"ok": True, "server": cfg.model_dump(mode="json", exclude={"admin_password", "server_password"})}

    @app.patch("/servers/{name}", response_model=ApiResult)
    async def update_server(name: str, patch: Dict[str, Any] = Body(...)):
        cfg = await orch.provisioner.update_server_settings(name, patch)
        return ApiResult(ok=True, detail="updated",
                         data=cfg.model_dump(mode="json", exclude={"admin_password", "server_password"}))

    @app.delete("/servers/{name}", status_code=202)
    async def delete_server(name: str, backup: bool = Query(default=False)):
        return _job_payload(await orch.delete_server(name, backup=backup))

    @app.post("/servers/{name}/start", response_model=ApiResult)
    async def start_server(name: str):
        res = await orch.start_server(name)
        return ApiResult(ok=res.success, detail=res.outcome.value, data=res.model_dump(mode="json"))

    @app.post("/servers/{name}/stop", response_model=ApiResult)
    async def stop_server(name: str, save: bool = Query(default=True)):
        res = await orch.stop_server(name, save=save)
        return ApiResult(ok=res.success, detail=res.outcome.value, data=res.model_dump(mode="json"))

    @app.post("/servers/{name}/restart", response_model=ApiResult)
    async def restart_server(name: str):
        res = await orch.restart_server(name)
        return ApiResult(ok=res.success, detail=res.outcome.value, data=res.model_dump(mode="json"))

    @app.get("/servers/{name}/status", response_model=ApiResult)
    async def server_status(name: str):
        status = await orch.supervisor.get_status(name)
        return ApiResult(ok=True, data=status.model_dump(mode="json"))

    @app.get("/servers/{name}/stats", response_model=ApiResult)
    async def server_stats(name: str):
        stats = await orch.supervisor.get_stats(name)
        if stats is None:
            return ApiResult(ok=False, detail="not_running")
        return ApiResult(ok=True, data=stats.model_dump(mode="json"))

    @app.post("/servers/{name}/rcon", response_model=ApiResult)
    async def rcon(name: str, body: RconCommand):
        return ApiResult(ok=True, data={"response": await orch.rcon_command(name, body.command)})

    @app.post("/servers/{name}/install", status_code=202)
    async def install(name: str, wait: bool = Query(default=True)):
        return _job_payload(await orch.install_binaries(name, wait=wait))

    @app.post("/servers/{name}/scripts", response_model=ApiResult)
    async def regenerate_scripts(name: str):
        paths = await orch.provisioner.regenerate_start_script(name)
        return ApiResult(ok=True, detail="regenerated", data=[str(p) for p in paths])

    @app.post("/scripts/regenerate", response_model=ApiResult)
    async def regenerate_all():
        return _results(await orch.provisioner.regenerate_all_start_scripts())

    @app.post("/binaries/update", status_code=202)
    async def update_binaries():
        return _job_payload(await orch.update_all_binaries())

    @app.get("/binaries/status", response_model=ApiResult)
    async def binaries_status():
        return ApiResult(ok=True, data=await orch.binaries_status())

    @app.post("/steamcmd/install", status_code=202)
    async def install_steamcmd():
        return _job_payload(await orch.ensure_steamcmd())

    # --- logs ---

    @app.get("/servers/{name}/logs")
    def server_logs(name: str):
        return {"ok": True, "logs": orch.server_logs(name)}

    @app.get("/servers/{name}/logs/{log_id}")
    def get_log(
        name: str,
        log_id: str,
        tail: int = Query(default=200, ge=0, le=5000),
        cursor: Optional[str] = None,
        max_lines: int = Query(default=200, ge=1, le=5000),
    ):
        path = orch.server_log_path(name, log_id)
        if cursor:
            chunk = read_from_cursor(path, cursor=cursor, max_lines=max_lines)
        else:
            chunk = read_tail(path, tail_lines=tail)
        return {
            "ok": True,
            "id": log_id,
            "cursor": chunk.cursor,
            "entries": [{"n": i + 1, "line": line} for i, line in enumerate(chunk.entries)],
            "truncated": chunk.truncated,
        }

    # --- clusters ---

    @app.get("/clusters")
    def list_clusters():
        return {"ok": True, "clusters": orch.list_clusters()}

    @app.post("/clusters", status_code=202)
    async def create_cluster(req: ClusterCreateRequest, install: bool = Query(default=True)):
        return _job_payload(await orch.create_cluster(req, install=install))

    @app.get("/clusters/{name}")
    def get_cluster(name: str):
        cluster = orch.store.get_cluster(name)
        return {"ok": True, "cluster": cluster.model_dump(mode="json", exclude={"password"})}

    @app.delete("/clusters/{name}", status_code=202)
    async def delete_cluster(name: str, backup: bool = Query(default=True), force: bool = Query(default=False)):
        return _job_payload(await orch.delete_cluster(name, backup=backup, force=force))

    @app.post("/clusters/{name}/start", response_model=ApiResult)
    async def start_cluster(name: str):
        return _results(await orch.start_cluster(name))

    @app.post("/clusters/{name}/stop", response_model=ApiResult)
    async def stop_cluster(name: str):
        return _results(await orch.stop_cluster(name))

    @app.post("/clusters/{name}/restart", response_model=ApiResult)
    async def restart_cluster(name: str):
        return _results(await orch.restart_cluster(name))

    @app.get("/clusters/{name}/status", response_model=ApiResult)
    async def cluster_status(name: str):
        return _results(await orch.clusters.cluster_status(name))

    # --- backups ---

    @app.get("/backups")
    def list_backups(kind: Optional[str] = Query(default=None, pattern="^(server|cluster)$"),
                     name: Optional[str] = None):
        backups = orch.provisioner.list_backups(kind, name)
        return {"ok": True, "backups": [b.model_dump(mode="json") for b in backups]}

    @app.post("/backups/{kind}/{name}", status_code=202)
    async def create_backup(kind: str, name: str):
        if kind not in ("server", "cluster"):
            raise HTTPException(status_code=404, detail="unknown_backup_kind")
        return _job_payload(await orch.backup(kind, name))

    @app.post("/backups/{kind}/{backup_id}/restore", status_code=202)
    async def restore_backup(kind: str, backup_id: str, target: Optional[str] = None):
        if kind not in ("server", "cluster"):
            raise HTTPException(status_code=404, detail="unknown_backup_kind")
        return _job_payload(await orch.restore(kind, backup_id, target=target))

    # --- jobs ---

    @app.get("/jobs")
    def list_jobs(type: Optional[str] = None):
        return {"ok": True, "jobs": [j.model_dump(mode="json") for j in orch.jobs.list_jobs(type=type)]}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str):
        return {"ok": True, "job": orch.jobs.get_job(job_id).model_dump(mode="json")}

    @app.websocket("/jobs/events")
    async def job_events(ws: WebSocket, job_id: Optional[str] = None):
        await ws.accept()
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[JobEvent]" = asyncio.Queue()

        def hook(event: JobEvent) -> None:
            if job_id is None or event.jobId == job_id:
                loop.call_soon_threadsafe(queue.put_nowait, event)

        async def pump() -> None:
            while True:
                event = await queue.get()
                await ws.send_json(event.model_dump(mode="json"))

        if job_id is not None:
            try:
                current = orch.jobs.get_job(job_id)
            except NotFoundError:
                await ws.close(code=4404)
                return
            await ws.send_json(to_event(current).model_dump(mode="json"))

        orch.jobs.add_hook(hook)
        sender = asyncio.create_task(pump())
        try:
            # client messages are ignored; receiving only detects the disconnect
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            log.debug("Job event subscriber disconnected")
        finally:
            orch.jobs.remove_hook(hook)
            sender.cancel()

    # --- shared mods / global configs ---

    @app.get("/mods")
    def get_mods():
        return {"ok": True, "mods": [m.model_dump(mode="json") for m in orch.store.load_shared_mods()]}

    @app.put("/mods", response_model=ApiResult)
    def put_mods(mods: List[SharedMod]):
        orch.store.save_shared_mods(mods)
        return ApiResult(ok=True, detail="saved", data=[m.id for m in mods if m.enabled])

    @app.get("/global-config")
    def get_global_config():
        return {"ok": True, "files": orch.configs.global_defaults(), "excluded": orch.store.load_exclusions()}

    @app.put("/global-config", response_model=ApiResult)
    def put_global_config(body: GlobalConfigUpdate):
        orch.configs.save_global_defaults(body.game_user_settings, body.game_ini)
        return ApiResult(ok=True, detail="saved")

    @app.put("/global-config/exclusions", response_model=ApiResult)
    def put_exclusions(names: List[str] = Body(...)):
        orch.store.save_exclusions(names)
        return ApiResult(ok=True, detail="saved", data=sorted(set(names)))

    # --- auto-shutdown ---

    @app.get("/autoshutdown")
    def autoshutdown_overview():
        return {
            "ok": True,
            "enabled": orch.autoshutdown.enabled,
            "policies": {k: v.model_dump(mode="json") for k, v in orch.autoshutdown.list_policies().items()},
            "timers": [t.model_dump(mode="json") for t in orch.autoshutdown.all_timers()],
        }

    @app.post("/autoshutdown/enabled", response_model=ApiResult)
    def autoshutdown_toggle(enabled: bool = Query(...)):
        orch.autoshutdown.set_enabled(enabled)
        return ApiResult(ok=True, detail="enabled" if enabled else "disabled")

    @app.get("/autoshutdown/{name}")
    def get_policy(name: str):
        orch.store.get_server(name)
        timer = orch.autoshutdown.get_timer_info(name)
        return {
            "ok": True,
            "policy": orch.autoshutdown.get_policy(name).model_dump(mode="json"),
            "timer": timer.model_dump(mode="json") if timer else None,
        }

    @app.patch("/autoshutdown/{name}", response_model=ApiResult)
    async def update_policy(name: str, patch: Dict[str, Any] = Body(...)):
        orch.store.get_server(name)
        unknown = set(patch) - set(AutoShutdownPolicy.model_fields)
        if unknown:
            raise HTTPException(status_code=400, detail=f"unknown policy fields: {sorted(unknown)}")
        policy = orch.autoshutdown.update_policy(name, patch)
        return ApiResult(ok=True, detail="updated", data=policy.model_dump(mode="json"))

    return app
