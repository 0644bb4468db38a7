"""
autoshutdown.py - stop idle servers
-----------------------------------
While a server is monitored it is polled over RCON. Every poll with
players online pushes the deadline out to now + timeout. As the deadline
approaches, in-game warnings go out at the configured minute offsets. At
the deadline the world is saved (bounded by a timeout; on failure the
shutdown proceeds with a warning) and a `shutdown-requested` event is
emitted for the process layer.
"""

from __future__ import annotations
import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .config.storage_backend import FileConfigStore
from .errors import RconError
from .models import AutoShutdownPolicy, ServerConfig, TimerInfo, utcnow
from .rcon import RconClient, client_for
from .settings import Settings
from .logging_setup import get_logger

log = get_logger("asa.launcher.autoshutdown")

ShutdownListener = Callable[[dict], object]


@dataclass
class AutoShutdownTimer:
    server_name: str
    started_at: datetime
    deadline: datetime
    policy: AutoShutdownPolicy
    warnings_sent: List[int] = field(default_factory=list)
    task: Optional[asyncio.Task] = None


class AutoShutdownService:
    def __init__(
        self,
        settings: Settings,
        store: FileConfigStore,
        rcon_factory: Optional[Callable[[ServerConfig], RconClient]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.rcon_factory = rcon_factory or (lambda cfg: client_for(settings, cfg))
        self.clock = clock
        self.enabled = True
        self._policies: Dict[str, AutoShutdownPolicy] = {}
        self._timers: Dict[str, AutoShutdownTimer] = {}
        self._listeners: List[ShutdownListener] = []

    def add_listener(self, listener: ShutdownListener) -> None:
        self._listeners.append(listener)

    # --- policies ---

    def initialize(self, name: str, policy: Optional[AutoShutdownPolicy] = None) -> AutoShutdownPolicy:
        if policy is None:
            policy = self.store.load_policy(name) or AutoShutdownPolicy()
        self._policies[name] = policy
        self.store.save_policy(name, policy)
        if policy.enabled:
            log.info("Auto-shutdown initialized for %s (%s min)", name, policy.timeout_minutes)
        return policy

    def get_policy(self, name: str) -> AutoShutdownPolicy:
        if name not in self._policies:
            self._policies[name] = self.store.load_policy(name) or AutoShutdownPolicy()
        return self._policies[name]

    def list_policies(self) -> Dict[str, AutoShutdownPolicy]:
        out = self.store.list_policies()
        out.update(self._policies)
        return out

    def update_policy(self, name: str, patch: dict) -> AutoShutdownPolicy:
        merged = self.get_policy(name).model_dump()
        merged.update(patch)
        policy = AutoShutdownPolicy.model_validate(merged)
        self._policies[name] = policy
        self.store.save_policy(name, policy)
        if not policy.enabled:
            self.stop_monitoring(name)
        elif name in self._timers:
            self._timers[name].policy = policy
        log.info("Auto-shutdown policy updated for %s: %s", name, policy.model_dump())
        return policy

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        if not enabled:
            self.clear_all_timers()
        log.info("Auto-shutdown globally %s", "enabled" if enabled else "disabled")

    # --- timers ---

    def _clear(self, name: str) -> Optional[AutoShutdownTimer]:
        timer = self._timers.pop(name, None)
        if timer and timer.task and not timer.task.done() and timer.task is not asyncio.current_task():
            timer.task.cancel()
        return timer

    def start_monitoring(self, name: str, *, run: bool = True) -> bool:
        policy = self.get_policy(name)
        if not self.enabled or not policy.enabled:
            return False
        self._clear(name)
        now = self.clock()
        timer = AutoShutdownTimer(
            server_name=name,
            started_at=now,
            deadline=now + timedelta(minutes=policy.timeout_minutes),
            policy=policy,
        )
        self._timers[name] = timer
        if run:
            timer.task = asyncio.get_running_loop().create_task(self._run(name))
        log.info("Auto-shutdown monitoring started for %s (%s minutes)", name, policy.timeout_minutes)
        return True

    def stop_monitoring(self, name: str) -> bool:
        """False if no timer existed."""
        if self._clear(name) is None:
            return False
        log.info("Auto-shutdown monitoring stopped for %s", name)
        return True

    def clear_all_timers(self) -> int:
        names = list(self._timers)
        for name in names:
            self._clear(name)
        if names:
            log.warning("Cleared all auto-shutdown timers: %s", names)
        return len(names)

    def get_timer_info(self, name: str) -> Optional[TimerInfo]:
        timer = self._timers.get(name)
        if timer is None:
            return None
        remaining = max(0.0, (timer.deadline - self.clock()).total_seconds())
        return TimerInfo(server_name=name, deadline=timer.deadline, remaining_seconds=remaining,
                         warnings_sent=list(timer.warnings_sent))

    def all_timers(self) -> List[TimerInfo]:
        return [info for info in (self.get_timer_info(n) for n in list(self._timers)) if info]

    # --- evaluation ---

    async def tick(self, name: str) -> Optional[str]:
        """
        One evaluation step.

        Returns:
            None (not monitored), "occupied", "waiting" or "shutdown"
        """
        timer = self._timers.get(name)
        if timer is None:
            return None
        cfg = self.store.get_server(name)
        client = self.rcon_factory(cfg)
        now = self.clock()

        try:
            players = await client.list_players()
        except RconError as e:
            log.debug("%s: occupancy poll failed: %s", name, e)
            players = None

        if players:
            timer.deadline = now + timedelta(minutes=timer.policy.timeout_minutes)
            timer.warnings_sent.clear()
            return "occupied"

        remaining = (timer.deadline - now).total_seconds()
        if remaining <= 0:
            await self.perform_shutdown(name)
            return "shutdown"

        due = [w for w in timer.policy.warning_intervals if remaining <= w * 60 and w not in timer.warnings_sent]
        if due:
            minutes = min(due)
            timer.warnings_sent.extend(due)
            try:
                await client.broadcast(f"Server shutting down in {minutes} minutes (no players online)")
            except RconError as e:
                log.warning("%s: warning broadcast failed: %s", name, e)
            log.info("%s: auto-shutdown warning sent (%s min left)", name, minutes)
        return "waiting"

    def _next_sleep(self, timer: AutoShutdownTimer) -> float:
        remaining = (timer.deadline - self.clock()).total_seconds()
        wake = [remaining - w * 60 for w in timer.policy.warning_intervals if w not in timer.warnings_sent]
        wake.append(remaining)
        soonest = min([w for w in wake if w > 0] or [0.0])
        return max(1.0, min(timer.policy.poll_interval_seconds, soonest))

    async def _run(self, name: str) -> None:
        while True:
            outcome = await self.tick(name)
            timer = self._timers.get(name)
            if outcome in (None, "shutdown") or timer is None:
                return
            await asyncio.sleep(self._next_sleep(timer))

    async def save_world_before_shutdown(self, name: str, timeout_seconds: float = 30.0) -> bool:
        """SaveWorld bounded by timeout; False (with a warning) if it did not acknowledge."""
        cfg = self.store.get_server(name)
        log.info("Saving world for %s before shutdown...", name)
        try:
            await asyncio.wait_for(self.rcon_factory(cfg).save_world(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            log.warning("%s: SaveWorld not acknowledged within %ss, proceeding with shutdown", name, timeout_seconds)
            return False
        except RconError as e:
            log.warning("%s: SaveWorld failed (%s), proceeding with shutdown", name, e)
            return False
        log.info("World saved for %s", name)
        return True

    async def perform_shutdown(self, name: str) -> bool:
        timer = self._clear(name)
        if timer is None:
            return False
        log.info("Auto-shutdown triggered for %s", name)
        saved = False
        if timer.policy.save_before_shutdown:
            saved = await self.save_world_before_shutdown(name, timer.policy.save_timeout_seconds)
        event = {"type": "shutdown-requested", "server": name, "reason": "auto_shutdown", "saved": saved}
        for listener in list(self._listeners):
            try:
                res = listener(event)
                if inspect.isawaitable(res):
                    await res
            except Exception:
                log.exception("Shutdown listener failed for %s", name)
        return True

    # --- lifecycle hooks ---

    def on_server_start(self, name: str) -> bool:
        return self.start_monitoring(name)

    def on_server_stop(self, name: str) -> bool:
        return self.stop_monitoring(name)

    def on_player_join(self, name: str) -> bool:
        return self.stop_monitoring(name)

    def on_player_leave(self, name: str, remaining_players: int) -> bool:
        if remaining_players == 0:
            return self.start_monitoring(name)
        return False
