from __future__ import annotations
import configparser
from pathlib import Path
from typing import Dict, List, Optional

from .config.file_layout import FleetLayout
from .config.merger import IniMerger
from .config.storage_backend import FileConfigStore
from .errors import FilesystemError
from .models import ClusterConfig, IniSections, ServerConfig
from .logging_setup import get_logger

log = get_logger("asa.launcher.cfg")

SERVER_SETTINGS = "ServerSettings"
GAME_MODE = "/script/shootergame.shootergamemode"
GAME_SESSION = "/script/engine.gamesession"

GAME_USER_SETTINGS_INI = "GameUserSettings.ini"
GAME_INI = "Game.ini"

# Seeded into global-configs/ when the operator has not provided files
BASELINE_GAME_USER_SETTINGS: IniSections = {
    SERVER_SETTINGS: {
        "DifficultyOffset": "1.0",
        "OverrideOfficialDifficulty": "5.0",
        "ResourcesRespawnPeriodMultiplier": "0.5",
        "AllowFlyerCarryPvE": "True",
        "ShowMapPlayerLocation": "True",
        "AllowCaveBuildingPvE": "True",
        "KickIdlePlayersPeriod": "900.0",
        "MaxIdleTime": "900.0",
    },
}

BASELINE_GAME_INI: IniSections = {
    GAME_MODE: {
        "bUseCorpseLocator": "True",
        "bDisableStructurePlacementCollision": "False",
        "bAllowPlatformSaddleMultiFloors": "True",
        "PvEStructureDecayPeriodMultiplier": "1.0",
        "PvEDinoDecayPeriodMultiplier": "1.0",
        "LimitTurretsRange": "10000.0",
        "LimitTurretsNum": "100",
    },
}


def render_ini(sections: IniSections) -> str:
    out: List[str] = []
    for section, values in sections.items():
        if out:
            out.append("")
        out.append(f"[{section}]")
        for key, value in values.items():
            out.append(f"{key}={value}")
    return "\n".join(out) + "\n"


def parse_ini(text: str) -> IniSections:
    parser = configparser.ConfigParser(strict=False, interpolation=None, delimiters=("=",))
    parser.optionxform = str
    parser.read_string(text)
    return {s: dict(parser.items(s)) for s in parser.sections()}


def identity_game_user_settings(cfg: ServerConfig) -> IniSections:
    return {
        SERVER_SETTINGS: {
            "SessionName": cfg.name,
            "Port": str(cfg.game_port),
            "QueryPort": str(cfg.query_port),
            "RCONEnabled": "True",
            "RCONPort": str(cfg.rcon_port),
            "ServerAdminPassword": cfg.admin_password,
            "ServerPassword": cfg.server_password or "",
            "WinLivePlayers": str(cfg.max_players),
        },
        "MessageOfTheDay": {
            "Message": f"Welcome to {cfg.name}!",
            "Duration": "10",
        },
    }


def identity_game_ini(cfg: ServerConfig) -> IniSections:
    return {GAME_SESSION: {"MaxPlayers": str(cfg.max_players)}}


def cluster_game_user_settings(cluster: Optional[ClusterConfig]) -> IniSections:
    if cluster is None:
        return {}
    layer: IniSections = {SERVER_SETTINGS: {k: str(v) for k, v in cluster.multipliers.items()}}
    return IniMerger().merge_layer(layer, cluster.game_user_settings)


class ConfigGenerator:
    """
    Writes Game.ini and GameUserSettings.ini for one server.

    Precedence: server override > cluster default > global default. Servers
    listed in config-exclusions.json skip the global layer. Identity keys
    (session name, ports, passwords, player cap) always come from the
    ServerConfig.
    """

    def __init__(self, layout: FleetLayout, store: FileConfigStore, merger: Optional[IniMerger] = None):
        self.layout = layout
        self.store = store
        self.merger = merger or IniMerger()

    def _read_ini(self, path: Path) -> IniSections:
        if not path.exists():
            return {}
        try:
            return parse_ini(path.read_text(encoding="utf-8"))
        except (OSError, configparser.Error) as e:
            raise FilesystemError("read ini", path, e) from e

    def ensure_global_defaults(self) -> None:
        for path, baseline in (
            (self.layout.global_game_user_settings_ini, BASELINE_GAME_USER_SETTINGS),
            (self.layout.global_game_ini, BASELINE_GAME_INI),
        ):
            if not path.exists():
                self._write(path, render_ini(baseline))
                log.info("Seeded global defaults: %s", path)
        if not self.layout.exclusions_json.exists():
            self.store.save_exclusions([])

    def global_defaults(self) -> Dict[str, IniSections]:
        return {
            GAME_USER_SETTINGS_INI: self._read_ini(self.layout.global_game_user_settings_ini),
            GAME_INI: self._read_ini(self.layout.global_game_ini),
        }

    def save_global_defaults(self, game_user_settings: Optional[IniSections] = None,
                             game_ini: Optional[IniSections] = None) -> None:
        if game_user_settings is not None:
            self._write(self.layout.global_game_user_settings_ini, render_ini(game_user_settings))
        if game_ini is not None:
            self._write(self.layout.global_game_ini, render_ini(game_ini))

    def build(self, cfg: ServerConfig, cluster: Optional[ClusterConfig] = None) -> Dict[str, IniSections]:
        """Merged sections per file name, without writing anything."""
        excluded = cfg.name in self.store.load_exclusions()
        globals_ = self.global_defaults()

        gus = self.merger.merge(
            globals_[GAME_USER_SETTINGS_INI],
            cluster_game_user_settings(cluster),
            cfg.game_user_settings,
            excluded=excluded,
        )
        gus = self.merger.merge_layer(gus, identity_game_user_settings(cfg))

        game = self.merger.merge(
            globals_[GAME_INI],
            cluster.game_ini if cluster else None,
            cfg.game_ini,
            excluded=excluded,
        )
        game = self.merger.merge_layer(game, identity_game_ini(cfg))
        return {GAME_USER_SETTINGS_INI: gus, GAME_INI: game}

    def _write(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise FilesystemError("write ini", path, e) from e

    def write(self, cfg: ServerConfig, server_dir: Path, cluster: Optional[ClusterConfig] = None) -> List[Path]:
        target = FleetLayout.config_dir(server_dir)
        written = []
        for fname, sections in self.build(cfg, cluster).items():
            path = target / fname
            self._write(path, render_ini(sections))
            written.append(path)
        log.info("Config files written for %s -> %s", cfg.name, target)
        return written
