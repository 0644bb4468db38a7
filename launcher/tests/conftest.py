"""
Shared fakes: no real game server, psutil scan or RCON socket is involved.
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from asa_launcher.config.file_layout import FleetLayout
from asa_launcher.config.storage_backend import FileConfigStore
from asa_launcher.config_generator import ConfigGenerator
from asa_launcher.errors import RconConnectionError
from asa_launcher.mods import ModResolver
from asa_launcher.process_finder import ProcessFinder, ProcessHandle
from asa_launcher.provisioner import ServerProvisioner
from asa_launcher.script_generator import ScriptGenerator
from asa_launcher.settings import Settings
from asa_launcher.steamcmd import SteamCMD
from asa_launcher.supervisor import ProcessSupervisor


class FakeFinder(ProcessFinder):
    def __init__(self):
        self.procs: Dict[str, ProcessHandle] = {}
        self.error: Optional[Exception] = None

    def add(self, name: str, pid: int) -> ProcessHandle:
        handle = ProcessHandle(pid=pid, name="ArkAscendedServer.exe",
                               started_at=datetime.now(timezone.utc),
                               cmdline=[f"TheIsland_WP?SessionName={name}"])
        self.procs[name] = handle
        return handle

    def remove(self, name: str) -> None:
        self.procs.pop(name, None)

    def find(self, server_name: str, server_dir: Path) -> Optional[ProcessHandle]:
        if self.error is not None:
            raise self.error
        return self.procs.get(server_name)

    def get(self, pid: int) -> Optional[ProcessHandle]:
        return next((h for h in self.procs.values() if h.pid == pid), None)


class FakeRunner:
    """Stands in for ProcessRunner; `finder` mirrors the process table."""

    def __init__(self, finder: FakeFinder):
        self.finder = finder
        self.started: List[str] = []
        self.terminated: List[int] = []
        self.killed: List[int] = []
        self.exit_on_terminate = True
        self.spawn_pid = 4000

    def _drop(self, pid: int) -> None:
        for name, h in list(self.finder.procs.items()):
            if h.pid == pid:
                self.finder.remove(name)

    async def start(self, name, cmd, *, cwd=None, log_file=None):
        self.started.append(name)
        self.spawn_pid += 1
        self.finder.add(name, self.spawn_pid)

    def terminate(self, pid: int) -> bool:
        self.terminated.append(pid)
        if self.exit_on_terminate:
            self._drop(pid)
        return True

    def kill(self, pid: int) -> bool:
        self.killed.append(pid)
        self._drop(pid)
        return True

    def wait_gone(self, pid: int, timeout: float) -> bool:
        return self.finder.get(pid) is None

    def stats(self, pid: int, *, cpu_interval: float = 0.2):
        return None


class FakeRcon:
    """Per-server scripted RCON replies; `down=True` behaves like a refused connection."""

    def __init__(self):
        self.players: List[str] = []
        self.down = False
        self.calls: List[str] = []
        self.save_delay = 0.0

    def _check(self, what: str) -> None:
        self.calls.append(what)
        if self.down:
            raise RconConnectionError("connection refused")

    async def list_players(self):
        self._check("ListPlayers")
        return list(self.players)

    async def save_world(self):
        self._check("SaveWorld")
        if self.save_delay:
            await asyncio.sleep(self.save_delay)
        return "World Saved"

    async def broadcast(self, message):
        self._check(f"Broadcast {message}")
        return ""

    async def get_day(self):
        self._check("GetDay")
        return 12

    async def execute(self, command):
        self._check(command)
        return ""


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ASA_BASE_PATH=tmp_path / "asa",
        SKIP_INSTALL=True,
        SCRIPT_PLATFORM="posix",
        SAVE_WAIT_SECONDS=0,
        RESTART_DELAY_SECONDS=0,
        STOP_TIMEOUT_SECONDS=0.1,
        PROCESS_POLL_SECONDS=0.01,
        STARTUP_GRACE_SECONDS=60,
    )


@pytest.fixture
def layout(settings):
    layout = FleetLayout(settings.base_path)
    layout.ensure_structure()
    return layout


@pytest.fixture
def store(layout):
    return FileConfigStore(layout)


@pytest.fixture
def finder():
    return FakeFinder()


@pytest.fixture
def runner(finder):
    return FakeRunner(finder)


@pytest.fixture
def rcon():
    return FakeRcon()


@pytest.fixture
def supervisor(settings, store, layout, finder, runner, rcon):
    return ProcessSupervisor(settings, store, layout, finder, runner=runner,
                             scripts=ScriptGenerator(settings, layout),
                             rcon_factory=lambda cfg: rcon)


@pytest.fixture
def provisioner(settings, layout, store, supervisor):
    configs = ConfigGenerator(layout, store)
    configs.ensure_global_defaults()
    return ServerProvisioner(
        settings, layout, store, SteamCMD(settings, layout),
        ScriptGenerator(settings, layout), configs,
        ModResolver(settings.mod_policy_rules), supervisor,
    )
