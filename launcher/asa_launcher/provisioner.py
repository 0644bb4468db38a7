"""
provisioner.py - on-disk artifacts for servers and clusters
-----------------------------------------------------------
Creates, updates and removes server/cluster trees: binaries (SteamCMD),
Game.ini/GameUserSettings.ini, launch/stop scripts, the server-config.json
snapshot, plus backup and restore of save-game and config subtrees.

Every operation takes an optional `progress` callable; long operations run
inside jobs and report through it.
"""

from __future__ import annotations
import asyncio
import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .config.file_layout import SAVED_REL, FleetLayout
from .config.storage_backend import FileConfigStore
from .config_generator import ConfigGenerator
from .errors import (
    ConfigValidationError,
    DuplicateNameError,
    FilesystemError,
    LauncherError,
    NotFoundError,
)
from .mods import ModResolver
from .models import (
    BackupInfo,
    ClusterConfig,
    ClusterCreateRequest,
    MemberResult,
    ServerConfig,
    utcnow,
)
from .script_generator import ScriptGenerator
from .settings import Settings
from .steamcmd import SteamCMD
from .supervisor import ProcessSupervisor
from .logging_setup import get_logger

log = get_logger("asa.launcher.provision")

ProgressSink = Callable[..., None]

BACKUP_INFO = "backup-info.json"
SNAPSHOT = "server-config.json"
IMMUTABLE_FIELDS = {"name", "cluster_id"}


def _noop(*_args, **_kwargs) -> None:
    return None


def _rmtree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise FilesystemError("remove directory", path, e) from e


def _copytree(src: Path, dst: Path) -> None:
    try:
        shutil.copytree(src, dst, dirs_exist_ok=True)
    except (OSError, shutil.Error) as e:
        raise FilesystemError("copy directory", src, e) from e


def _mkdir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError("create directory", path, e) from e


def _write_json(path: Path, data) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    except OSError as e:
        raise FilesystemError("write json", path, e) from e


def _read_json(path: Path):
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise FilesystemError("read json", path, e) from e


class ServerProvisioner:
    def __init__(
        self,
        settings: Settings,
        layout: FleetLayout,
        store: FileConfigStore,
        steamcmd: SteamCMD,
        scripts: ScriptGenerator,
        configs: ConfigGenerator,
        mods: ModResolver,
        supervisor: ProcessSupervisor,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.layout = layout
        self.store = store
        self.steamcmd = steamcmd
        self.scripts = scripts
        self.configs = configs
        self.mods = mods
        self.supervisor = supervisor
        self.clock = clock

    # --- helpers ---

    def _cluster_of(self, cfg: ServerConfig) -> Optional[ClusterConfig]:
        if not cfg.cluster_id:
            return None
        return self.store.get_cluster(cfg.cluster_id)

    def final_mods(self, cfg: ServerConfig) -> List[int]:
        return self.mods.final_mods(cfg, self.store.load_shared_mods())

    def write_snapshot(self, cfg: ServerConfig, server_dir: Path) -> Path:
        data = cfg.model_dump(mode="json")
        data["paths"] = {
            "server": str(server_dir),
            "executable": str(FleetLayout.server_executable(server_dir, self.settings.server_executable)),
            "configs": str(FleetLayout.config_dir(server_dir)),
            "saves": str(FleetLayout.save_dir(server_dir)),
            "logs": str(FleetLayout.server_logs_dir(server_dir)),
        }
        data["final_mods"] = self.final_mods(cfg)
        path = server_dir / SNAPSHOT
        _write_json(path, data)
        return path

    def _write_artifacts(self, cfg: ServerConfig, cluster: Optional[ClusterConfig]) -> None:
        server_dir = self.layout.server_dir_for(cfg)
        self.configs.write(cfg, server_dir, cluster)
        self.scripts.write_scripts(cfg, server_dir, self.final_mods(cfg), cluster)
        self.write_snapshot(cfg, server_dir)

    async def _materialize(self, cfg: ServerConfig, cluster: Optional[ClusterConfig], *,
                           install: bool, emit: ProgressSink) -> Path:
        server_dir = self.layout.server_dir_for(cfg)
        _mkdir(server_dir)
        _mkdir(FleetLayout.save_dir(server_dir))
        _mkdir(FleetLayout.config_dir(server_dir))
        if install:
            emit(f"Installing binaries for {cfg.name}")
            await self.steamcmd.ensure_app(server_dir, progress=emit)
        emit(f"Writing configs for {cfg.name}")
        await asyncio.to_thread(self._write_artifacts, cfg, cluster)
        emit(f"Server {cfg.name} ready")
        return server_dir

    # --- servers ---

    async def create_server(self, cfg: ServerConfig, *, install: bool = True,
                            progress: Optional[ProgressSink] = None) -> ServerConfig:
        emit = progress or _noop
        if cfg.cluster_id:
            raise ConfigValidationError("Cluster members are created through create_cluster")
        cfg = self.mods.apply_defaults(cfg)
        emit(f"Validating server {cfg.name}", percent=5)
        await self.store.reserve_servers([cfg])
        try:
            await self._materialize(cfg, None, install=install, emit=emit)
        except LauncherError:
            self.store.delete_server(cfg.name)
            raise
        log.info("Created server %s (ports %s)", cfg.name, cfg.ports())
        return cfg

    async def update_server_settings(self, name: str, patch: Dict, *,
                                     progress: Optional[ProgressSink] = None) -> ServerConfig:
        emit = progress or _noop
        current = self.store.get_server(name)
        changed = {k for k, v in patch.items() if getattr(current, k, None) != v}
        if changed & IMMUTABLE_FIELDS:
            raise ConfigValidationError(f"Fields cannot be changed: {sorted(changed & IMMUTABLE_FIELDS)}")
        updated = ServerConfig.model_validate({**current.model_dump(), **patch})
        if set(updated.ports()) != set(current.ports()):
            await self.store.reserve_servers([updated], replace=True)
        else:
            self.store.save_server(updated)
        emit(f"Regenerating configs and scripts for {name}")
        await asyncio.to_thread(self._write_artifacts, updated, self._cluster_of(updated))
        log.info("Updated settings for %s: %s", name, sorted(changed))
        return updated

    async def regenerate_start_script(self, name: str) -> List[Path]:
        cfg = self.store.get_server(name)
        server_dir = self.layout.server_dir_for(cfg)
        return await asyncio.to_thread(
            self.scripts.write_scripts, cfg, server_dir, self.final_mods(cfg), self._cluster_of(cfg)
        )

    async def regenerate_all_start_scripts(self) -> List[MemberResult]:
        results = []
        for cfg in self.store.list_servers():
            try:
                paths = await self.regenerate_start_script(cfg.name)
                results.append(MemberResult(name=cfg.name, success=True, detail={"files": [str(p) for p in paths]}))
            except LauncherError as e:
                log.warning("Regenerating scripts for %s failed: %s", cfg.name, e)
                results.append(MemberResult(name=cfg.name, success=False, error=str(e)))
        return results

    async def delete_server(self, name: str, *, backup: bool = False,
                            progress: Optional[ProgressSink] = None) -> None:
        emit = progress or _noop
        cfg = self.store.get_server(name)
        emit(f"Stopping {name}")
        await self.supervisor.stop(name)
        if backup:
            await self.backup_server(name, progress=emit)
        emit(f"Removing files of {name}")
        await asyncio.to_thread(_rmtree, self.layout.server_dir_for(cfg))
        if cfg.cluster_id and self.store.has_cluster(cfg.cluster_id):
            cluster = self.store.get_cluster(cfg.cluster_id)
            cluster.members = [m for m in cluster.members if m != name]
            if cluster.members:
                self.store.save_cluster(cluster)
            else:
                emit(f"Removing empty cluster {cluster.name}")
                await asyncio.to_thread(_rmtree, self.layout.cluster_dir(cluster.name))
                self.store.delete_cluster(cluster.name)
                log.info("Deleted cluster %s with its last member", cluster.name)
        self.store.delete_server(name)
        log.info("Deleted server %s", name)

    async def install_binaries(self, name: str, *, wait: bool = True,
                               progress: Optional[ProgressSink] = None) -> Path:
        cfg = self.store.get_server(name)
        return await self.steamcmd.ensure_app(self.layout.server_dir_for(cfg), wait=wait, progress=progress)

    async def update_all_binaries(self, *, progress: Optional[ProgressSink] = None) -> List[MemberResult]:
        """One server after another; installs share the global lock anyway."""
        emit = progress or _noop
        results = []
        servers = self.store.list_servers()
        for i, cfg in enumerate(servers):
            emit(f"Updating {cfg.name} ({i + 1}/{len(servers)})", percent=int(100 * i / max(1, len(servers))))
            try:
                await self.install_binaries(cfg.name, progress=emit)
                results.append(MemberResult(name=cfg.name, success=True))
            except LauncherError as e:
                results.append(MemberResult(name=cfg.name, success=False, error=str(e)))
        return results

    # --- clusters ---

    def plan_cluster(self, req: ClusterCreateRequest) -> Tuple[ClusterConfig, List[ServerConfig]]:
        """Derive member configs and ports; pure, nothing is written."""
        count = len(req.members) or req.server_count
        if not 1 <= count <= self.settings.cluster_max_servers:
            raise ConfigValidationError(
                f"Server count must be between 1 and {self.settings.cluster_max_servers}, got {count}")
        offset = self.settings.cluster_port_offset
        if req.base_port + (count - 1) * offset + 2 > 65535:
            raise ConfigValidationError("Derived ports exceed 65535; lower base_port or server count")

        cluster = ClusterConfig(
            name=req.name,
            password=req.cluster_password,
            base_port=req.base_port,
            multipliers=dict(req.multipliers),
            created_at=self.clock(),
        )
        members = []
        for i in range(count):
            spec = req.members[i] if i < len(req.members) else None
            base = req.base_port + i * offset
            cfg = ServerConfig(
                name=spec.name if spec else f"{req.name}-{i + 1}",
                map=(spec.map if spec and spec.map else req.map),
                game_port=(spec.game_port if spec and spec.game_port else base),
                query_port=(spec.query_port if spec and spec.query_port else base + 1),
                rcon_port=(spec.rcon_port if spec and spec.rcon_port else base + 2),
                max_players=(spec.max_players if spec and spec.max_players else req.max_players),
                admin_password=req.admin_password,
                server_password=req.server_password or (req.cluster_password or None),
                mods=list(spec.mods if spec and spec.mods else req.mods),
                exclude_shared_mods=bool(spec.exclude_shared_mods) if spec and spec.exclude_shared_mods is not None else False,
                disable_battleye=bool(spec.disable_battleye) if spec else False,
                cluster_id=req.name,
            )
            members.append(self.mods.apply_defaults(cfg))
        cluster.members = [m.name for m in members]
        return cluster, members

    async def create_cluster(self, req: ClusterCreateRequest, *, install: bool = True,
                             progress: Optional[ProgressSink] = None) -> List[MemberResult]:
        emit = progress or _noop
        emit(f"Validating cluster {req.name}", percent=5)
        if self.store.has_cluster(req.name):
            raise DuplicateNameError(f"Cluster {req.name!r} already exists")
        cluster, members = self.plan_cluster(req)

        emit("Reserving names and ports", percent=10)
        await self.store.reserve_servers(members)
        self.store.save_cluster(cluster)

        emit("Creating cluster directory", percent=15)
        try:
            _mkdir(self.layout.cluster_data_dir(cluster.name))
        except FilesystemError:
            for m in members:
                self.store.delete_server(m.name)
            self.store.delete_cluster(cluster.name)
            raise

        results: List[MemberResult] = []
        for i, cfg in enumerate(members):
            emit(f"Provisioning {cfg.name} ({i + 1}/{len(members)})",
                 percent=20 + int(75 * i / len(members)))
            try:
                await self._materialize(cfg, cluster, install=install, emit=emit)
                results.append(MemberResult(name=cfg.name, success=True, detail={
                    "game_port": cfg.game_port, "query_port": cfg.query_port, "rcon_port": cfg.rcon_port,
                }))
            except LauncherError as e:
                log.error("Provisioning %s in cluster %s failed: %s", cfg.name, cluster.name, e)
                emit(f"Failed to provision {cfg.name}: {e}")
                self.store.delete_server(cfg.name)
                results.append(MemberResult(name=cfg.name, success=False, error=str(e)))

        cluster.members = [r.name for r in results if r.success]
        if cluster.members:
            self.store.save_cluster(cluster)
        else:
            self.store.delete_cluster(cluster.name)
            await asyncio.to_thread(_rmtree, self.layout.cluster_dir(cluster.name))
        ok = len(cluster.members)
        emit(f"Cluster {cluster.name}: {ok}/{len(results)} members created", percent=100)
        return results

    async def delete_cluster(self, name: str, *, backup: bool = True, force: bool = False,
                             progress: Optional[ProgressSink] = None) -> List[MemberResult]:
        emit = progress or _noop
        cluster = self.store.get_cluster(name)
        emit(f"Stopping members of {name}")

        async def stop_one(member: str) -> MemberResult:
            try:
                res = await self.supervisor.stop(member)
                return MemberResult(name=member, success=True, detail={"outcome": res.outcome.value})
            except LauncherError as e:
                return MemberResult(name=member, success=False, error=str(e))

        results = list(await asyncio.gather(*(stop_one(m) for m in cluster.members)))
        failed = [r.name for r in results if not r.success]
        if failed and not force:
            raise ConfigValidationError(f"Cannot delete cluster {name}: members still running: {failed}")

        if backup:
            try:
                await self.backup_cluster(name, progress=emit)
            except LauncherError as e:
                if not force:
                    raise
                log.warning("Backup of cluster %s failed, continuing (force): %s", name, e)

        emit(f"Removing files of {name}")
        await asyncio.to_thread(_rmtree, self.layout.cluster_dir(name))
        for member in cluster.members:
            self.store.delete_server(member)
        self.store.delete_cluster(name)
        log.info("Deleted cluster %s (%d members)", name, len(cluster.members))
        return results

    # --- backups ---

    def _backup_id(self, root: Path, name: str) -> str:
        base = f"{name}-{self.clock():%Y%m%d-%H%M%S}"
        candidate, n = base, 1
        while (root / candidate).exists():
            n += 1
            candidate = f"{base}-{n}"
        return candidate

    def _copy_server_state(self, cfg: ServerConfig, dest: Path) -> None:
        src = self.layout.server_dir_for(cfg) / SAVED_REL
        if src.exists():
            _copytree(src, dest / "Saved")
        else:
            _mkdir(dest / "Saved")
        _write_json(dest / SNAPSHOT, cfg.model_dump(mode="json"))

    async def backup_server(self, name: str, *, progress: Optional[ProgressSink] = None) -> BackupInfo:
        emit = progress or _noop
        cfg = self.store.get_server(name)
        root = self.layout.server_backups_dir
        backup_id = self._backup_id(root, name)
        dest = root / backup_id
        emit(f"Backing up {name} -> {dest}")
        await asyncio.to_thread(self._copy_server_state, cfg, dest)
        info = BackupInfo(id=backup_id, kind="server", name=name, created_at=self.clock(),
                          members=[name], path=str(dest))
        _write_json(dest / BACKUP_INFO, info.model_dump(mode="json"))
        log.info("Server backup created: %s", dest)
        return info

    def _copy_cluster_state(self, cluster: ClusterConfig, members: List[ServerConfig], dest: Path) -> None:
        for cfg in members:
            self._copy_server_state(cfg, dest / "members" / cfg.name)
        data_dir = self.layout.cluster_data_dir(cluster.name)
        if data_dir.exists():
            _copytree(data_dir, dest / "clusterdata")
        _write_json(dest / "cluster.json", cluster.model_dump(mode="json"))

    async def backup_cluster(self, name: str, *, progress: Optional[ProgressSink] = None) -> BackupInfo:
        emit = progress or _noop
        cluster = self.store.get_cluster(name)
        members = self.store.cluster_members(name)
        root = self.layout.cluster_backups_dir
        backup_id = self._backup_id(root, name)
        dest = root / backup_id
        emit(f"Backing up cluster {name} -> {dest}")
        await asyncio.to_thread(self._copy_cluster_state, cluster, members, dest)
        info = BackupInfo(id=backup_id, kind="cluster", name=name, created_at=self.clock(),
                          members=[m.name for m in members], path=str(dest))
        _write_json(dest / BACKUP_INFO, info.model_dump(mode="json"))
        log.info("Cluster backup created: %s", dest)
        return info

    def list_backups(self, kind: Optional[str] = None, name: Optional[str] = None) -> List[BackupInfo]:
        roots = {"server": self.layout.server_backups_dir, "cluster": self.layout.cluster_backups_dir}
        out = []
        for k, root in roots.items():
            if kind and k != kind or not root.exists():
                continue
            for info_path in root.glob(f"*/{BACKUP_INFO}"):
                try:
                    info = BackupInfo.model_validate(_read_json(info_path))
                except (FilesystemError, ValueError) as e:
                    log.warning("Skipping unreadable backup %s: %s", info_path.parent, e)
                    continue
                if name is None or info.name == name:
                    out.append(info)
        return sorted(out, key=lambda b: b.created_at, reverse=True)

    def _load_backup(self, kind: str, backup_id: str) -> Tuple[BackupInfo, Path]:
        root = self.layout.server_backups_dir if kind == "server" else self.layout.cluster_backups_dir
        path = root / backup_id
        if not (path / BACKUP_INFO).exists():
            raise NotFoundError(f"{kind.capitalize()} backup {backup_id!r} not found")
        return BackupInfo.model_validate(_read_json(path / BACKUP_INFO)), path

    def _restore_saved(self, cfg: ServerConfig, src: Path) -> None:
        target = self.layout.server_dir_for(cfg) / SAVED_REL
        _rmtree(target)
        _copytree(src / "Saved", target)

    @staticmethod
    def _snapshot_config(current: ServerConfig, src: Path) -> ServerConfig:
        """Settings as they were at backup time, bound to the record being restored."""
        if not (src / SNAPSHOT).exists():
            log.warning("Backup %s has no %s, keeping current settings of %s", src, SNAPSHOT, current.name)
            return current
        try:
            saved = ServerConfig.model_validate(_read_json(src / SNAPSHOT))
        except ValueError as e:
            raise ConfigValidationError(f"Invalid settings snapshot in {src}: {e}") from e
        keep = {"name": current.name, "cluster_id": current.cluster_id}
        if saved.name != current.name:
            # restoring into another server: its ports stay its own
            keep.update(game_port=current.game_port, query_port=current.query_port, rcon_port=current.rcon_port)
        return saved.model_copy(update=keep)

    async def restore_server(self, backup_id: str, *, target: Optional[str] = None,
                             progress: Optional[ProgressSink] = None) -> ServerConfig:
        emit = progress or _noop
        info, path = self._load_backup("server", backup_id)
        name = target or info.name
        current = self.store.get_server(name)
        cfg = self._snapshot_config(current, path)
        self.store.check_servers([cfg], replace=True)
        emit(f"Stopping {name} before restore")
        await self.supervisor.stop(name)
        emit(f"Restoring {backup_id} into {name}")
        await asyncio.to_thread(self._restore_saved, cfg, path)
        await self.store.reserve_servers([cfg], replace=True)
        await asyncio.to_thread(self._write_artifacts, cfg, self._cluster_of(cfg))
        log.info("Restored server %s from %s", name, backup_id)
        return cfg

    @staticmethod
    def _cluster_snapshot(current: ClusterConfig, src: Path) -> ClusterConfig:
        if not (src / "cluster.json").exists():
            return current
        try:
            saved = ClusterConfig.model_validate(_read_json(src / "cluster.json"))
        except ValueError as e:
            raise ConfigValidationError(f"Invalid cluster snapshot in {src}: {e}") from e
        return saved.model_copy(update={"name": current.name, "members": list(current.members),
                                        "created_at": current.created_at})

    async def restore_cluster(self, backup_id: str, *, target: Optional[str] = None,
                              progress: Optional[ProgressSink] = None) -> List[MemberResult]:
        emit = progress or _noop
        info, path = self._load_backup("cluster", backup_id)
        current = self.store.get_cluster(target or info.name)
        if set(info.members) != set(current.members):
            raise ConfigValidationError(
                f"Backup members {sorted(info.members)} do not match cluster "
                f"{current.name} members {sorted(current.members)}")
        cluster = self._cluster_snapshot(current, path)
        configs = [self._snapshot_config(self.store.get_server(m), path / "members" / m)
                   for m in cluster.members]
        self.store.check_servers(configs, replace=True)

        emit(f"Stopping members of {cluster.name}")
        await asyncio.gather(*(self.supervisor.stop(m) for m in cluster.members))
        self.store.save_cluster(cluster)

        results = []
        for cfg in configs:
            try:
                await asyncio.to_thread(self._restore_saved, cfg, path / "members" / cfg.name)
                await self.store.reserve_servers([cfg], replace=True)
                await asyncio.to_thread(self._write_artifacts, cfg, cluster)
                results.append(MemberResult(name=cfg.name, success=True))
                emit(f"Restored {cfg.name}")
            except LauncherError as e:
                results.append(MemberResult(name=cfg.name, success=False, error=str(e)))
        if (path / "clusterdata").exists():
            data_dir = self.layout.cluster_data_dir(cluster.name)
            await asyncio.to_thread(_rmtree, data_dir)
            await asyncio.to_thread(_copytree, path / "clusterdata", data_dir)
        log.info("Restored cluster %s from %s", cluster.name, backup_id)
        return results
