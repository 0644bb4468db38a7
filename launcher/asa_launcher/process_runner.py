from __future__ import annotations
import asyncio
import os
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from .errors import SpawnError
from .logging_setup import get_logger, mask_secrets
from .models import ProcessStats

log = get_logger("asa.launcher.proc")


@dataclass
class LaunchHandle:
    name: str
    proc: asyncio.subprocess.Process
    launched_at: datetime


def _open_log_file(path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "a", encoding="utf-8", buffering=1)


def _detach_kwargs() -> dict:
    """Spawn options putting the child in its own session / process group."""
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


class ProcessRunner:
    """Spawns launch scripts and controls OS processes by pid."""

    def __init__(self):
        self.handles: Dict[str, LaunchHandle] = {}

    async def start(self, name: str, cmd: List[str], *, cwd: Optional[Path] = None,
                    log_file: Optional[Path] = None) -> LaunchHandle:
        log.info("Starting %s: %s", name, mask_secrets(" ".join(cmd)))
        fh = _open_log_file(log_file) if log_file else None
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=fh if fh else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.STDOUT,
                **_detach_kwargs(),
            )
        except OSError as e:
            raise SpawnError(f"Failed to spawn {name}: {e}") from e
        finally:
            if fh:
                fh.close()
        h = LaunchHandle(name=name, proc=proc, launched_at=datetime.now(timezone.utc))
        self.handles[name] = h
        # reap the launcher shell so it does not linger as a zombie
        asyncio.get_running_loop().create_task(self._reap(h))
        return h

    async def _reap(self, h: LaunchHandle) -> None:
        rc = await h.proc.wait()
        log.info("Launch script for %s exited (rc=%s)", h.name, rc)
        if self.handles.get(h.name) is h:
            del self.handles[h.name]

    @staticmethod
    def terminate(pid: int) -> bool:
        try:
            psutil.Process(pid).terminate()
            return True
        except psutil.NoSuchProcess:
            return False

    @staticmethod
    def kill(pid: int) -> bool:
        try:
            proc = psutil.Process(pid)
            for child in proc.children(recursive=True):
                child.kill()
            proc.kill()
            return True
        except psutil.NoSuchProcess:
            return False

    @staticmethod
    def wait_gone(pid: int, timeout: float) -> bool:
        """True once pid has exited, False if still alive after `timeout`."""
        try:
            proc = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return True
        _, alive = psutil.wait_procs([proc], timeout=timeout)
        return not alive

    @staticmethod
    def stats(pid: int, *, cpu_interval: float = 0.2) -> Optional[ProcessStats]:
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                rss = proc.memory_info().rss
                created = proc.create_time()
            cpu = proc.cpu_percent(interval=cpu_interval)
        except psutil.NoSuchProcess:
            return None
        return ProcessStats(
            pid=pid,
            uptime_seconds=max(0.0, time.time() - created),
            rss_bytes=rss,
            cpu_percent=cpu,
        )
