from __future__ import annotations
import asyncio
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .autoshutdown import AutoShutdownService
from .cluster import ClusterCoordinator
from .config import FileConfigStore, FleetLayout, IniMerger
from .config_generator import ConfigGenerator
from .errors import ConfigValidationError, DuplicateNameError, InstallBusyError, LauncherError, NotFoundError
from .jobs import JobContext, JobManager
from .log_reader import find_log, list_logs
from .mods import ModResolver
from .models import (
    ActionOutcome,
    ActionResult,
    ClusterCreateRequest,
    Job,
    MemberResult,
    ServerConfig,
    ServerStatus,
)
from .process_finder import ProcessFinder, PsutilProcessFinder
from .process_runner import ProcessRunner
from .provisioner import ServerProvisioner
from .rcon import RconClient, client_for
from .script_generator import ScriptGenerator
from .settings import Settings
from .steamcmd import SteamCMD
from .supervisor import ProcessSupervisor
from .logging_setup import get_logger

log = get_logger("asa.launcher.orch")


class Orchestrator:
    """Composition root: one instance per launcher process owns every store and service."""

    def __init__(self, settings: Settings, *, finder: Optional[ProcessFinder] = None,
                 runner: Optional[ProcessRunner] = None,
                 rcon_factory: Optional[Callable[[ServerConfig], RconClient]] = None):
        self.settings = settings
        self.rcon_factory = rcon_factory or (lambda cfg: client_for(settings, cfg))
        self.layout = FleetLayout(settings.base_path)
        self.store = FileConfigStore(self.layout)
        self.configs = ConfigGenerator(self.layout, self.store, IniMerger())
        self.scripts = ScriptGenerator(settings, self.layout)
        self.mods = ModResolver(settings.mod_policy_rules)
        self.steamcmd = SteamCMD(settings, self.layout)
        self.supervisor = ProcessSupervisor(
            settings,
            self.store,
            self.layout,
            finder or PsutilProcessFinder(settings.server_executable),
            runner=runner,
            scripts=self.scripts,
            rcon_factory=self.rcon_factory,
        )
        self.provisioner = ServerProvisioner(
            settings, self.layout, self.store, self.steamcmd, self.scripts,
            self.configs, self.mods, self.supervisor,
        )
        self.clusters = ClusterCoordinator(self.store, self.supervisor)
        self.jobs = JobManager()
        self.autoshutdown = AutoShutdownService(settings, self.store, rcon_factory=self.rcon_factory)

        self.autoshutdown.add_listener(self._on_shutdown_requested)
        self.supervisor.add_listener(self._on_supervisor_event)

    def prepare_environment(self) -> None:
        self.layout.ensure_structure()
        self.configs.ensure_global_defaults()
        for name, policy in self.store.list_policies().items():
            if self.store.has_server(name):
                self.autoshutdown.initialize(name, policy)

    # --- event wiring ---

    async def _on_shutdown_requested(self, event: dict) -> None:
        name = event["server"]
        # world was already saved (or the save timed out) by the auto-shutdown service
        res = await self.supervisor.stop(name, save=False)
        log.info("Auto-shutdown of %s: %s", name, res.outcome.value)

    def _on_supervisor_event(self, event: dict) -> None:
        if event.get("type") == "server-crashed":
            self.autoshutdown.on_server_stop(event["server"])

    # --- servers ---

    async def list_servers(self) -> List[Dict]:
        servers = self.store.list_servers()

        async def one(cfg: ServerConfig) -> Dict:
            try:
                status = await self.supervisor.get_status(cfg.name)
            except LauncherError as e:
                status = ServerStatus(name=cfg.name, state=self.supervisor.runtime(cfg.name).state, error=str(e))
            return {"config": cfg.model_dump(mode="json", exclude={"admin_password", "server_password"}),
                    "status": status.model_dump(mode="json")}

        return list(await asyncio.gather(*(one(c) for c in servers)))

    async def create_server(self, cfg: ServerConfig, *, install: bool = True) -> Job:
        if cfg.cluster_id:
            raise ConfigValidationError("Cluster members are created through create_cluster")
        # re-checked under the reservation lock inside the job
        self.store.check_servers([cfg])

        async def op(ctx: JobContext):
            created = await self.provisioner.create_server(cfg, install=install, progress=ctx)
            return created.model_dump(mode="json", exclude={"admin_password", "server_password"})

        return self.jobs.submit("create-server", {"server": cfg.name}, op)

    async def start_server(self, name: str) -> ActionResult:
        res = await self.supervisor.start(name)
        if res.outcome in (ActionOutcome.started, ActionOutcome.already_running):
            self.autoshutdown.on_server_start(name)
        return res

    async def stop_server(self, name: str, *, save: bool = True) -> ActionResult:
        self.autoshutdown.on_server_stop(name)
        return await self.supervisor.stop(name, save=save)

    async def restart_server(self, name: str) -> ActionResult:
        self.autoshutdown.on_server_stop(name)
        res = await self.supervisor.restart(name)
        if res.outcome in (ActionOutcome.started, ActionOutcome.already_running):
            self.autoshutdown.on_server_start(name)
        return res

    async def delete_server(self, name: str, *, backup: bool = False) -> Job:
        self.store.get_server(name)
        self.autoshutdown.on_server_stop(name)

        async def op(ctx: JobContext):
            await self.provisioner.delete_server(name, backup=backup, progress=ctx)
            return {"deleted": name}

        return self.jobs.submit("delete-server", {"server": name}, op)

    async def rcon_command(self, name: str, command: str) -> str:
        cfg = self.store.get_server(name)
        return await self.rcon_factory(cfg).execute(command)

    # --- clusters ---

    def list_clusters(self) -> List[Dict]:
        out = []
        for cluster in self.store.list_clusters():
            data = cluster.model_dump(mode="json", exclude={"password"})
            data["servers"] = [
                {"name": m.name, "map": m.map, "game_port": m.game_port,
                 "query_port": m.query_port, "rcon_port": m.rcon_port}
                for m in self.store.cluster_members(cluster.name)
            ]
            out.append(data)
        return out

    async def create_cluster(self, req: ClusterCreateRequest, *, install: bool = True) -> Job:
        if self.store.has_cluster(req.name):
            raise DuplicateNameError(f"Cluster {req.name!r} already exists")
        _, members = self.provisioner.plan_cluster(req)
        self.store.check_servers(members)

        async def op(ctx: JobContext) -> List[MemberResult]:
            results = await self.provisioner.create_cluster(req, install=install, progress=ctx)
            if not any(r.success for r in results):
                errors = "; ".join(f"{r.name}: {r.error}" for r in results)
                raise LauncherError(f"No member of cluster {req.name} could be created ({errors})")
            return results

        return self.jobs.submit("create-cluster", {"cluster": req.name, "servers": req.server_count}, op)

    async def start_cluster(self, name: str) -> List[MemberResult]:
        results = await self.clusters.start_cluster(name)
        for r in results:
            if r.success:
                self.autoshutdown.on_server_start(r.name)
        return results

    async def stop_cluster(self, name: str) -> List[MemberResult]:
        for member in self.store.get_cluster(name).members:
            self.autoshutdown.on_server_stop(member)
        return await self.clusters.stop_cluster(name)

    async def restart_cluster(self, name: str) -> List[MemberResult]:
        for member in self.store.get_cluster(name).members:
            self.autoshutdown.on_server_stop(member)
        results = await self.clusters.restart_cluster(name)
        for r in results:
            if r.success:
                self.autoshutdown.on_server_start(r.name)
        return results

    async def delete_cluster(self, name: str, *, backup: bool = True, force: bool = False) -> Job:
        cluster = self.store.get_cluster(name)
        for member in cluster.members:
            self.autoshutdown.on_server_stop(member)

        async def op(ctx: JobContext):
            return await self.provisioner.delete_cluster(name, backup=backup, force=force, progress=ctx)

        return self.jobs.submit("delete-cluster", {"cluster": name, "backup": backup}, op)

    # --- backups ---

    async def backup(self, kind: str, name: str) -> Job:
        if kind == "cluster":
            self.store.get_cluster(name)
            fn = self.provisioner.backup_cluster
        else:
            self.store.get_server(name)
            fn = self.provisioner.backup_server

        async def op(ctx: JobContext):
            return await fn(name, progress=ctx)

        return self.jobs.submit(f"backup-{kind}", {kind: name}, op)

    async def restore(self, kind: str, backup_id: str, *, target: Optional[str] = None) -> Job:
        fn = self.provisioner.restore_cluster if kind == "cluster" else self.provisioner.restore_server

        async def op(ctx: JobContext):
            return await fn(backup_id, target=target, progress=ctx)

        return self.jobs.submit(f"restore-{kind}", {"backup": backup_id, "target": target}, op)

    # --- binaries ---

    async def install_binaries(self, name: str, *, wait: bool = True) -> Job:
        self.store.get_server(name)
        if not wait and self.steamcmd.busy:
            raise InstallBusyError("Another binary install is in progress")

        async def op(ctx: JobContext):
            exe = await self.provisioner.install_binaries(name, wait=wait, progress=ctx)
            return {"executable": str(exe)}

        return self.jobs.submit("install-binaries", {"server": name}, op)

    async def update_all_binaries(self) -> Job:
        async def op(ctx: JobContext):
            return await self.provisioner.update_all_binaries(progress=ctx)

        return self.jobs.submit("update-binaries", {}, op)

    async def binaries_status(self) -> Dict:
        dirs = {cfg.name: self.layout.server_dir_for(cfg) for cfg in self.store.list_servers()}
        return await asyncio.to_thread(self.steamcmd.status, dirs)

    async def ensure_steamcmd(self) -> Job:
        async def op(ctx: JobContext):
            return {"steamcmd": str(await self.steamcmd.ensure(progress=ctx))}

        return self.jobs.submit("install-steamcmd", {}, op)

    # --- logs ---

    def _game_logs_dir(self, name: str) -> Path:
        cfg = self.store.get_server(name)
        return FleetLayout.server_logs_dir(self.layout.server_dir_for(cfg))

    def server_logs(self, name: str) -> List[Dict]:
        own = list_logs(self._game_logs_dir(name))
        console = [e for e in list_logs(self.layout.logs_dir) if e["id"] == f"{name}.console"]
        return own + console

    def server_log_path(self, name: str, log_id: str) -> Path:
        if log_id == f"{name}.console":
            path = find_log(log_id, self.layout.logs_dir)
        else:
            path = find_log(log_id, self._game_logs_dir(name))
        if path is None:
            raise NotFoundError(f"Log {log_id!r} not found for {name}")
        return path

    async def shutdown(self) -> None:
        self.autoshutdown.clear_all_timers()
        await self.supervisor.shutdown()
