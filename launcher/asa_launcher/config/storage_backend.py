"""
Persistierung der Flotten-Konfiguration.

Alle Datensätze (ServerConfig, ClusterConfig, AutoShutdown-Policies,
Shared Mods, Exclusions) liegen als JSON unter records/ bzw.
global-configs/. Der Store wird einmal in der Composition Root
erzeugt und per Referenz weitergegeben.
"""

from __future__ import annotations
import asyncio
import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from .file_layout import FleetLayout
from ..errors import DuplicateNameError, FilesystemError, NotFoundError, PortCollisionError
from ..models import AutoShutdownPolicy, ClusterConfig, ServerConfig, SharedMod
from ..logging_setup import get_logger

log = get_logger("asa.launcher.storage")


class FileConfigStore:
    """
    Datei-basierter ConfigStore.

    Port-Vergabe läuft über `reserve_servers`: Prüfung gegen die gesamte
    Flotte und Schreiben der Datensätze passieren unter einem Lock, damit
    parallele Cluster-Erstellungen keine Ports doppelt vergeben.
    """

    def __init__(self, layout: FleetLayout):
        self.layout = layout
        self.layout.ensure_structure()
        self._reserve_lock = asyncio.Lock()

    def _load_json(self, path: Path):
        """Lädt JSON-Datei mit Error-Handling."""
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            log.error(f"Failed to parse {path}: {e}")
            raise FilesystemError("parse record", path, e) from e
        except OSError as e:
            log.error(f"Failed to load {path}: {e}")
            raise FilesystemError("read record", path, e) from e

    def _save_json(self, path: Path, data) -> None:
        """Speichert JSON-Datei atomar."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_suffix(path.suffix + ".tmp")
            temp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            temp_path.replace(path)
        except OSError as e:
            raise FilesystemError("write record", path, e) from e
        log.debug(f"Saved record: {path}")

    def _remove(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise FilesystemError("delete record", path, e) from e

    # === Server ===

    def list_servers(self) -> List[ServerConfig]:
        out = []
        for p in sorted(self.layout.server_records_dir.glob("*.json")):
            raw = self._load_json(p)
            if raw is not None:
                out.append(ServerConfig.model_validate(raw))
        return out

    def has_server(self, name: str) -> bool:
        return self.layout.server_record(name).exists()

    def get_server(self, name: str) -> ServerConfig:
        raw = self._load_json(self.layout.server_record(name))
        if raw is None:
            raise NotFoundError(f"Server {name!r} not found")
        return ServerConfig.model_validate(raw)

    def save_server(self, cfg: ServerConfig) -> None:
        self._save_json(self.layout.server_record(cfg.name), cfg.model_dump(mode="json"))

    def delete_server(self, name: str) -> bool:
        removed = self._remove(self.layout.server_record(name))
        self._remove(self.layout.autoshutdown_record(name))
        return removed

    def port_owners(self, ignore: Iterable[str] = ()) -> Dict[int, str]:
        """Port -> Servername über die gesamte Flotte."""
        skip = set(ignore)
        owners: Dict[int, str] = {}
        for cfg in self.list_servers():
            if cfg.name in skip:
                continue
            for port in cfg.ports():
                owners[port] = cfg.name
        return owners

    def check_servers(self, configs: List[ServerConfig], *, replace: bool = False) -> None:
        """
        Validiert Namen und Ports einer Menge neuer (oder geänderter) Server.

        Args:
            configs: zu prüfende Server
            replace: True = bestehende Datensätze gleichen Namens werden ersetzt
        """
        names = [c.name for c in configs]
        seen: Set[str] = set()
        for n in names:
            if n in seen:
                raise DuplicateNameError(f"Server name {n!r} appears twice in request")
            seen.add(n)
            if not replace and self.has_server(n):
                raise DuplicateNameError(f"Server {n!r} already exists")

        owners = self.port_owners(ignore=names if replace else ())
        for cfg in configs:
            own: Set[int] = set()
            for port in cfg.ports():
                if port in own:
                    raise PortCollisionError(port, cfg.name, cfg.name)
                own.add(port)
                if port in owners:
                    raise PortCollisionError(port, owners[port], cfg.name)
            for port in own:
                owners[port] = cfg.name

    async def reserve_servers(self, configs: List[ServerConfig], *, replace: bool = False) -> None:
        """Check-and-reserve: Validierung und Schreiben unter einem Lock."""
        async with self._reserve_lock:
            self.check_servers(configs, replace=replace)
            for cfg in configs:
                self.save_server(cfg)
        log.info(f"Reserved servers: {[c.name for c in configs]}")

    # === Cluster ===

    def list_clusters(self) -> List[ClusterConfig]:
        out = []
        for p in sorted(self.layout.cluster_records_dir.glob("*.json")):
            raw = self._load_json(p)
            if raw is not None:
                out.append(ClusterConfig.model_validate(raw))
        return out

    def has_cluster(self, name: str) -> bool:
        return self.layout.cluster_record(name).exists()

    def get_cluster(self, name: str) -> ClusterConfig:
        raw = self._load_json(self.layout.cluster_record(name))
        if raw is None:
            raise NotFoundError(f"Cluster {name!r} not found")
        return ClusterConfig.model_validate(raw)

    def save_cluster(self, cluster: ClusterConfig) -> None:
        self._save_json(self.layout.cluster_record(cluster.name), cluster.model_dump(mode="json"))

    def delete_cluster(self, name: str) -> bool:
        return self._remove(self.layout.cluster_record(name))

    def cluster_members(self, name: str) -> List[ServerConfig]:
        cluster = self.get_cluster(name)
        members = []
        for member in cluster.members:
            if self.has_server(member):
                members.append(self.get_server(member))
            else:
                log.warning(f"Cluster {name} lists missing member {member}")
        return members

    # === Mods ===

    def load_shared_mods(self) -> List[SharedMod]:
        raw = self._load_json(self.layout.shared_mods_json) or []
        return [SharedMod.model_validate(m) for m in raw]

    def save_shared_mods(self, mods: List[SharedMod]) -> None:
        self._save_json(self.layout.shared_mods_json, [m.model_dump(mode="json") for m in mods])

    # === Auto-Shutdown ===

    def load_policy(self, name: str) -> Optional[AutoShutdownPolicy]:
        raw = self._load_json(self.layout.autoshutdown_record(name))
        return AutoShutdownPolicy.model_validate(raw) if raw is not None else None

    def save_policy(self, name: str, policy: AutoShutdownPolicy) -> None:
        self._save_json(self.layout.autoshutdown_record(name), policy.model_dump(mode="json"))

    def list_policies(self) -> Dict[str, AutoShutdownPolicy]:
        out = {}
        for p in sorted(self.layout.autoshutdown_dir.glob("*.json")):
            raw = self._load_json(p)
            if raw is not None:
                out[p.stem] = AutoShutdownPolicy.model_validate(raw)
        return out

    # === Exclusions ===

    def load_exclusions(self) -> List[str]:
        raw = self._load_json(self.layout.exclusions_json) or {}
        return list(raw.get("excludedServers", []))

    def save_exclusions(self, names: List[str]) -> None:
        self._save_json(self.layout.exclusions_json, {"excludedServers": sorted(set(names))})
