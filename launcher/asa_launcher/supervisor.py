"""
supervisor.py - lifecycle of individual server processes
--------------------------------------------------------
Per server: stopped -> starting -> running -> stopped (or crashed).

`start` returns once the launch script is spawned; a watcher task follows
the server until its process appears and then until it disappears. When
the process vanishes with no stop request recorded since launch, the
server is reported as crashed. That is the only signal available, so
status payloads carry `crash_reliable=False`.

Start/stop/restart are serialized per server name.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .config.file_layout import FleetLayout
from .config.storage_backend import FileConfigStore
from .errors import AmbiguousProcessMatchError, ProcessError, RconError, SpawnError
from .models import (
    ActionOutcome,
    ActionResult,
    ProcessStats,
    ServerConfig,
    ServerState,
    ServerStatus,
    utcnow,
)
from .process_finder import ProcessFinder, ProcessHandle
from .process_runner import ProcessRunner
from .rcon import RconClient, client_for
from .script_generator import ScriptGenerator
from .settings import Settings
from .logging_setup import get_logger

log = get_logger("asa.launcher.supervisor")

EventListener = Callable[[dict], None]
PID_REUSE_TOLERANCE = 2.0  # seconds


@dataclass
class ServerRuntime:
    state: ServerState = ServerState.stopped
    pid: Optional[int] = None
    launched_at: Optional[datetime] = None
    last_stop_requested_at: Optional[datetime] = None
    watcher: Optional[asyncio.Task] = None


class ProcessSupervisor:
    def __init__(
        self,
        settings: Settings,
        store: FileConfigStore,
        layout: FleetLayout,
        finder: ProcessFinder,
        runner: Optional[ProcessRunner] = None,
        scripts: Optional[ScriptGenerator] = None,
        rcon_factory: Optional[Callable[[ServerConfig], RconClient]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.layout = layout
        self.finder = finder
        self.runner = runner or ProcessRunner()
        self.scripts = scripts or ScriptGenerator(settings, layout)
        self.rcon_factory = rcon_factory or (lambda cfg: client_for(settings, cfg))
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._runtime: Dict[str, ServerRuntime] = {}
        self._listeners: List[EventListener] = []

    # --- plumbing ---

    def lock_for(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())

    def runtime(self, name: str) -> ServerRuntime:
        return self._runtime.setdefault(name, ServerRuntime())

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Supervisor event listener failed for %s", event.get("type"))

    async def _find(self, cfg: ServerConfig) -> Optional[ProcessHandle]:
        return await asyncio.to_thread(self.finder.find, cfg.name, self.layout.server_dir_for(cfg))

    def _within_grace(self, rt: ServerRuntime) -> bool:
        if rt.launched_at is None:
            return False
        return (self.clock() - rt.launched_at).total_seconds() < self.settings.startup_grace_seconds

    def _on_disappeared(self, name: str, pid: Optional[int]) -> None:
        rt = self.runtime(name)
        rt.pid = None
        if rt.last_stop_requested_at is not None:
            rt.state = ServerState.stopped
            log.info("%s stopped (pid=%s)", name, pid)
            return
        rt.state = ServerState.crashed
        log.warning("%s disappeared without a stop request (pid=%s), assuming crash", name, pid,
                    extra={"server": name})
        self._emit({
            "type": "server-crashed",
            "server": name,
            "pid": pid,
            "at": self.clock().isoformat(),
            "reliable": False,
        })

    async def _watch(self, cfg: ServerConfig) -> None:
        rt = self.runtime(cfg.name)
        poll = self.settings.process_poll_seconds
        handle = None
        while handle is None:
            try:
                handle = await self._find(cfg)
            except AmbiguousProcessMatchError as e:
                log.warning("%s", e)
            if handle is not None:
                break
            if not self._within_grace(rt):
                log.warning("%s: no process observed within %ss of launch",
                            cfg.name, self.settings.startup_grace_seconds)
                self._on_disappeared(cfg.name, None)
                return
            await asyncio.sleep(poll)

        rt.pid = handle.pid
        rt.state = ServerState.running
        log.info("%s running (pid=%s)", cfg.name, handle.pid, extra={"server": cfg.name})

        while await asyncio.to_thread(self._same_process, handle):
            await asyncio.sleep(poll)
        self._on_disappeared(cfg.name, handle.pid)

    def _same_process(self, handle: ProcessHandle) -> bool:
        current = self.finder.get(handle.pid)
        if current is None:
            return False
        # a recycled pid carries a different start time
        return abs((current.started_at - handle.started_at).total_seconds()) < PID_REUSE_TOLERANCE

    def _cancel_watcher(self, rt: ServerRuntime) -> None:
        if rt.watcher is not None and not rt.watcher.done():
            rt.watcher.cancel()
        rt.watcher = None

    # --- operations ---

    async def _start_locked(self, name: str) -> ActionResult:
        cfg = self.store.get_server(name)
        rt = self.runtime(name)
        handle = await self._find(cfg)
        if handle is not None:
            rt.state = ServerState.running
            rt.pid = handle.pid
            return ActionResult(name=name, outcome=ActionOutcome.already_running, pid=handle.pid)

        server_dir = self.layout.server_dir_for(cfg)
        script = server_dir / self.scripts.start_script_name()
        if not script.exists():
            raise SpawnError(f"Launch script missing for {name}: {script}")

        self._cancel_watcher(rt)
        rt.last_stop_requested_at = None
        rt.launched_at = self.clock()
        rt.state = ServerState.starting
        try:
            await self.runner.start(
                name,
                self.scripts.launch_command(),
                cwd=server_dir,
                log_file=self.layout.logs_dir / f"{name}.console.log",
            )
        except SpawnError:
            rt.state = ServerState.stopped
            raise
        rt.watcher = asyncio.get_running_loop().create_task(self._watch(cfg))
        return ActionResult(name=name, outcome=ActionOutcome.started, message="launch in progress")

    async def _stop_locked(self, name: str, *, save: bool = True) -> ActionResult:
        cfg = self.store.get_server(name)
        rt = self.runtime(name)
        rt.last_stop_requested_at = self.clock()
        handle = await self._find(cfg)
        if handle is None:
            self._cancel_watcher(rt)
            rt.state = ServerState.stopped
            rt.pid = None
            return ActionResult(name=name, outcome=ActionOutcome.not_running, message="no running process")

        if save:
            try:
                await self.rcon_factory(cfg).save_world()
                await asyncio.sleep(self.settings.save_wait_seconds)
            except RconError as e:
                log.warning("%s: SaveWorld before stop failed: %s", name, e)

        pid = handle.pid
        outcome = ActionOutcome.stopped
        await asyncio.to_thread(self.runner.terminate, pid)
        gone = await asyncio.to_thread(self.runner.wait_gone, pid, self.settings.stop_timeout_seconds)
        if not gone:
            log.warning("%s did not exit within %ss, killing pid=%s", name, self.settings.stop_timeout_seconds, pid)
            await asyncio.to_thread(self.runner.kill, pid)
            outcome = ActionOutcome.killed
            if not await asyncio.to_thread(self.runner.wait_gone, pid, 5.0):
                raise ProcessError(f"{name}: pid {pid} survived kill")

        self._cancel_watcher(rt)
        rt.state = ServerState.stopped
        rt.pid = None
        log.info("%s %s (pid=%s)", name, outcome.value, pid, extra={"server": name})
        return ActionResult(name=name, outcome=outcome, pid=pid)

    async def start(self, name: str) -> ActionResult:
        async with self.lock_for(name):
            return await self._start_locked(name)

    async def stop(self, name: str, *, save: bool = True) -> ActionResult:
        async with self.lock_for(name):
            return await self._stop_locked(name, save=save)

    async def restart(self, name: str) -> ActionResult:
        async with self.lock_for(name):
            await self._stop_locked(name)
            await asyncio.sleep(self.settings.restart_delay_seconds)
            return await self._start_locked(name)

    async def is_running(self, name: str) -> bool:
        cfg = self.store.get_server(name)
        return await self._find(cfg) is not None

    async def get_stats(self, name: str) -> Optional[ProcessStats]:
        cfg = self.store.get_server(name)
        handle = await self._find(cfg)
        if handle is None:
            return None
        return await asyncio.to_thread(self.runner.stats, handle.pid)

    async def get_status(self, name: str) -> ServerStatus:
        cfg = self.store.get_server(name)
        rt = self.runtime(name)
        try:
            handle = await self._find(cfg)
        except AmbiguousProcessMatchError as e:
            return ServerStatus(name=name, state=rt.state, error=str(e),
                                last_stop_requested_at=rt.last_stop_requested_at)

        if handle is None:
            if rt.state == ServerState.starting and self._within_grace(rt):
                state = ServerState.starting
            elif rt.state in (ServerState.starting, ServerState.running):
                self._cancel_watcher(rt)
                self._on_disappeared(name, rt.pid)
                state = rt.state
            else:
                state = rt.state
            return ServerStatus(name=name, state=state, last_stop_requested_at=rt.last_stop_requested_at)

        rt.state = ServerState.running
        rt.pid = handle.pid
        status = ServerStatus(
            name=name,
            state=ServerState.running,
            pid=handle.pid,
            uptime_seconds=max(0.0, (self.clock() - handle.started_at).total_seconds()),
            last_stop_requested_at=rt.last_stop_requested_at,
        )
        client = self.rcon_factory(cfg)
        try:
            players = await client.list_players()
        except RconError as e:
            # still booting or RCON misconfigured: report process-only status
            status.error = f"rcon: {e}"
            return status
        status.rcon_ok = True
        status.players = players
        status.player_count = len(players)
        try:
            status.day = await client.get_day()
        except RconError as e:
            log.debug("%s: day query failed: %s", name, e)
        return status

    async def shutdown(self) -> None:
        """Cancel all watchers (servers keep running)."""
        for rt in self._runtime.values():
            self._cancel_watcher(rt)
