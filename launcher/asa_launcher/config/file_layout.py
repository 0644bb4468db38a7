"""
Verzeichnis-Layout für die Server-Flotte.

Verwaltet die physische Ablage:
    <base>/
    ├── records/
    │   ├── servers/<name>.json
    │   ├── clusters/<name>.json
    │   ├── autoshutdown/<name>.json
    │   └── shared-mods.json
    ├── global-configs/
    │   ├── Game.ini
    │   ├── GameUserSettings.ini
    │   └── config-exclusions.json
    ├── servers/<name>/              (Standalone-Server)
    ├── clusters/<cluster>/
    │   ├── clusterdata/
    │   └── <member>/
    ├── backups/{servers,clusters}/
    └── logs/
"""

from __future__ import annotations
from pathlib import Path
from typing import Optional
from ..logging_setup import get_logger

log = get_logger("asa.launcher.layout")

SERVER_BINARY_REL = Path("ShooterGame") / "Binaries" / "Win64"
SAVED_REL = Path("ShooterGame") / "Saved"
CONFIG_REL = SAVED_REL / "Config" / "WindowsServer"
SAVE_GAMES_REL = SAVED_REL / "SavedArks"
SERVER_LOGS_REL = SAVED_REL / "Logs"


class FleetLayout:
    """Zentrale Verwaltung der Verzeichnisstruktur."""

    def __init__(self, base_path: Path):
        """
        Args:
            base_path: Absoluter Wurzelpfad der Flotte (ASA_BASE_PATH)
        """
        self.root = Path(base_path)
        if not self.root.is_absolute():
            raise ValueError(f"base_path must be absolute, got {self.root}")

    # === Records ===
    @property
    def records_dir(self) -> Path:
        return self.root / "records"

    @property
    def server_records_dir(self) -> Path:
        return self.records_dir / "servers"

    @property
    def cluster_records_dir(self) -> Path:
        return self.records_dir / "clusters"

    @property
    def autoshutdown_dir(self) -> Path:
        return self.records_dir / "autoshutdown"

    def server_record(self, name: str) -> Path:
        return self.server_records_dir / f"{name}.json"

    def cluster_record(self, name: str) -> Path:
        return self.cluster_records_dir / f"{name}.json"

    def autoshutdown_record(self, name: str) -> Path:
        return self.autoshutdown_dir / f"{name}.json"

    @property
    def shared_mods_json(self) -> Path:
        return self.records_dir / "shared-mods.json"

    # === Globale Defaults ===
    @property
    def global_configs_dir(self) -> Path:
        return self.root / "global-configs"

    @property
    def global_game_ini(self) -> Path:
        return self.global_configs_dir / "Game.ini"

    @property
    def global_game_user_settings_ini(self) -> Path:
        return self.global_configs_dir / "GameUserSettings.ini"

    @property
    def exclusions_json(self) -> Path:
        """config-exclusions.json - Server, die keine globalen Defaults erhalten."""
        return self.global_configs_dir / "config-exclusions.json"

    # === Server- und Cluster-Bäume ===
    @property
    def servers_dir(self) -> Path:
        return self.root / "servers"

    @property
    def clusters_dir(self) -> Path:
        return self.root / "clusters"

    def cluster_dir(self, cluster: str) -> Path:
        return self.clusters_dir / cluster

    def cluster_data_dir(self, cluster: str) -> Path:
        """Gemeinsames Transfer-Verzeichnis (-ClusterDirOverride)."""
        return self.cluster_dir(cluster) / "clusterdata"

    def server_dir(self, name: str, cluster: Optional[str] = None) -> Path:
        if cluster:
            return self.cluster_dir(cluster) / name
        return self.servers_dir / name

    def server_dir_for(self, cfg) -> Path:
        """Server-Verzeichnis eines ServerConfig (Cluster-Mitglied oder standalone)."""
        return self.server_dir(cfg.name, cfg.cluster_id)

    @staticmethod
    def server_executable(server_dir: Path, exe_name: str) -> Path:
        return server_dir / SERVER_BINARY_REL / exe_name

    @staticmethod
    def config_dir(server_dir: Path) -> Path:
        return server_dir / CONFIG_REL

    @staticmethod
    def save_dir(server_dir: Path) -> Path:
        """Spielstände. Wird bei Regenerierung nie angefasst."""
        return server_dir / SAVE_GAMES_REL

    @staticmethod
    def server_logs_dir(server_dir: Path) -> Path:
        return server_dir / SERVER_LOGS_REL

    # === Backups ===
    @property
    def backups_dir(self) -> Path:
        return self.root / "backups"

    @property
    def server_backups_dir(self) -> Path:
        return self.backups_dir / "servers"

    @property
    def cluster_backups_dir(self) -> Path:
        return self.backups_dir / "clusters"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def install_lock(self) -> Path:
        return self.root / "steamcmd.lock"

    def ensure_structure(self) -> None:
        """Erstellt alle Basis-Verzeichnisse falls nicht vorhanden."""
        for d in (
            self.server_records_dir,
            self.cluster_records_dir,
            self.autoshutdown_dir,
            self.global_configs_dir,
            self.servers_dir,
            self.clusters_dir,
            self.server_backups_dir,
            self.cluster_backups_dir,
            self.logs_dir,
        ):
            d.mkdir(parents=True, exist_ok=True)
        log.debug(f"Ensured fleet structure at {self.root}")
