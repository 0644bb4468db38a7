"""
script_generator.py - launch and stop scripts per server
--------------------------------------------------------
Output depends only on the ServerConfig, the resolved mod list and the
cluster membership, so regenerating twice yields identical bytes. Scripts
live in the server directory root; the save-game tree is never written.
"""

from __future__ import annotations
import shlex
from pathlib import Path
from typing import Dict, List, Optional

from .config.file_layout import FleetLayout
from .errors import FilesystemError
from .models import ClusterConfig, ServerConfig
from .settings import Settings
from .logging_setup import get_logger

log = get_logger("asa.launcher.scripts")

FIXED_FLAGS = ["-servergamelog", "-NotifyAdminCommandsInChat", "-UseDynamicConfig"]


def map_arg(map_name: str) -> str:
    return map_name if map_name.endswith("_WP") else f"{map_name}_WP"


def bat_quote(arg: str) -> str:
    """cmd.exe quoting: `%` doubled, quoted when the argument holds spaces or metacharacters."""
    arg = arg.replace("%", "%%")
    if any(c in arg for c in ' &|<>^()'):
        return f'"{arg}"'
    return arg


class ScriptGenerator:
    def __init__(self, settings: Settings, layout: FleetLayout):
        self.settings = settings
        self.layout = layout

    @property
    def windows(self) -> bool:
        return self.settings.script_platform == "windows"

    def start_script_name(self) -> str:
        return "start.bat" if self.windows else "start.sh"

    def launch_command(self) -> List[str]:
        if self.windows:
            return ["cmd", "/c", "start.bat"]
        return ["/bin/sh", "start.sh"]

    def query_string(self, cfg: ServerConfig) -> str:
        params = [
            map_arg(cfg.map),
            f"SessionName={cfg.name}",
            f"Port={cfg.game_port}",
            f"QueryPort={cfg.query_port}",
            f"RCONPort={cfg.rcon_port}",
            "RCONEnabled=True",
            f"ServerAdminPassword={cfg.admin_password}",
            f"WinLivePlayers={cfg.max_players}",
        ]
        if cfg.server_password:
            params.append(f"ServerPassword={cfg.server_password}")
        url = cfg.dynamic_config_url or self.settings.dynamic_config_url
        if url:
            params.append(f"customdynamicconfigurl={url}")
        return "?".join(params)

    def build_args(self, cfg: ServerConfig, mods: List[int], cluster: Optional[ClusterConfig] = None) -> List[str]:
        args = [self.query_string(cfg)]
        if mods:
            args.append("-mods=" + ",".join(str(m) for m in mods))
        args += FIXED_FLAGS
        if cluster is not None:
            args += [
                f"-ClusterDirOverride={self.layout.cluster_data_dir(cluster.name)}",
                "-NoTransferFromFiltering",
                f"-clusterid={cluster.name}",
            ]
        if cfg.disable_battleye:
            args.append("-NoBattleEye")
        return args

    def render_start(self, cfg: ServerConfig, server_dir: Path, mods: List[int],
                     cluster: Optional[ClusterConfig] = None) -> str:
        exe = FleetLayout.server_executable(server_dir, self.settings.server_executable)
        query, *flags = self.build_args(cfg, mods, cluster)
        if self.windows:
            exe_q = str(exe).replace("%", "%%")
            query_q = query.replace("%", "%%")
            tail = " ".join(bat_quote(f) for f in flags)
            lines = [
                "@echo off",
                f"REM {cfg.name}" + (f" (cluster {cluster.name})" if cluster else ""),
                f'"{exe_q}" "{query_q}" {tail}',
                "",
            ]
            return "\r\n".join(lines)
        argv = " ".join(shlex.quote(a) for a in [str(exe), query, *flags])
        lines = [
            "#!/bin/sh",
            f"# {cfg.name}" + (f" (cluster {cluster.name})" if cluster else ""),
            'cd "$(dirname "$0")"',
            f"exec {self.settings.launch_wrapper} {argv}",
            "",
        ]
        return "\n".join(lines)

    def render_stop(self, name: str) -> Dict[str, str]:
        exe_stem = Path(self.settings.server_executable).stem
        pattern = f'SessionName={name}([?" ]|$)'
        if self.windows:
            ps1 = "\r\n".join([
                f"# Stop script for {name}",
                f"$processes = Get-Process -Name '{exe_stem}' -ErrorAction SilentlyContinue",
                "$found = $false",
                "foreach ($proc in $processes) {",
                '    $cmdLine = (Get-CimInstance Win32_Process -Filter "ProcessId = $($proc.Id)").CommandLine',
                f"    if ($cmdLine -match '{pattern}') {{",
                "        Stop-Process -Id $proc.Id -Force",
                f'        Write-Host "{name} stopped"',
                "        $found = $true",
                "        break",
                "    }",
                "}",
                "if (-not $found) {",
                f'    Write-Host "No running process found for server {name}"',
                "}",
                "",
            ])
            bat = "\r\n".join([
                "@echo off",
                f'powershell -ExecutionPolicy Bypass -File "%~dp0stop_{name}.ps1"',
                "",
            ])
            return {f"stop_{name}.ps1": ps1, "stop.bat": bat}
        sh = "\n".join([
            "#!/bin/sh",
            f"# Stop script for {name}",
            f"if pkill -f '{pattern}'; then",
            f'    echo "{name} stopped"',
            "else",
            f'    echo "No running process found for server {name}"',
            "fi",
            "",
        ])
        return {"stop.sh": sh}

    def _write(self, path: Path, content: str) -> None:
        data = content.encode("utf-8")
        try:
            if path.exists() and path.read_bytes() == data:
                return
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)
            if not self.windows:
                path.chmod(0o755)
        except OSError as e:
            raise FilesystemError("write script", path, e) from e

    def write_scripts(self, cfg: ServerConfig, server_dir: Path, mods: List[int],
                      cluster: Optional[ClusterConfig] = None) -> List[Path]:
        if not server_dir.is_dir():
            raise FilesystemError("write scripts", server_dir, FileNotFoundError("server directory missing"))
        written = []
        start = server_dir / self.start_script_name()
        self._write(start, self.render_start(cfg, server_dir, mods, cluster))
        written.append(start)
        for fname, content in self.render_stop(cfg.name).items():
            p = server_dir / fname
            self._write(p, content)
            written.append(p)
        log.info("Scripts written for %s (%d mods)", cfg.name, len(mods))
        return written
