"""
process_finder.py - re-identify running game servers
----------------------------------------------------
The launcher does not keep child handles across its own restarts, so a
server's process is found by scanning the OS process table:

1. keep processes whose executable name is the server executable,
2. score each by whether its command line contains the server's install
   path and/or a `SessionName=<name>` token,
3. the best-scoring process wins; a tie between several is ambiguous.

This is a heuristic. Two servers installed in the same directory with the
same session name cannot be told apart. The strategy is swappable through
the `ProcessFinder` interface.
"""

from __future__ import annotations
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

import psutil

from .errors import AmbiguousProcessMatchError
from .logging_setup import get_logger

log = get_logger("asa.launcher.finder")


@dataclass
class ProcessHandle:
    pid: int
    name: str
    started_at: datetime
    cmdline: List[str] = field(default_factory=list)


class ProcessFinder(ABC):
    @abstractmethod
    def find(self, server_name: str, server_dir: Path) -> Optional[ProcessHandle]:
        """Return the process serving `server_name`, None if there is none."""

    @abstractmethod
    def get(self, pid: int) -> Optional[ProcessHandle]:
        """Re-read a known pid, None once it has exited."""


def _norm(text: str) -> str:
    text = text.replace("\\", "/")
    return text.lower() if os.name == "nt" else text


def session_token_matches(cmdline: str, server_name: str) -> bool:
    pattern = rf"SessionName={re.escape(server_name)}(?:[?\s\"']|$)"
    return re.search(pattern, cmdline) is not None


def match_score(cmdline: Iterable[str], server_name: str, server_dir: Path) -> int:
    joined = " ".join(cmdline)
    score = 0
    if _norm(str(server_dir)) in _norm(joined):
        score += 1
    if session_token_matches(joined, server_name):
        score += 1
    return score


def pick_best(candidates: List[ProcessHandle], server_name: str, server_dir: Path) -> Optional[ProcessHandle]:
    scored = [(match_score(c.cmdline, server_name, server_dir), c) for c in candidates]
    scored = [(s, c) for s, c in scored if s > 0]
    if not scored:
        return None
    best = max(s for s, _ in scored)
    winners = [c for s, c in scored if s == best]
    if len(winners) > 1:
        raise AmbiguousProcessMatchError(server_name, [c.pid for c in winners])
    return winners[0]


class PsutilProcessFinder(ProcessFinder):
    def __init__(self, executable_name: str):
        self.executable_name = executable_name

    def _is_server_exe(self, name: Optional[str], cmdline: List[str]) -> bool:
        exe = self.executable_name.lower()
        if name and name.lower() == exe:
            return True
        # under wine the process name is often the loader; the exe is argv[0]
        return bool(cmdline) and _norm(cmdline[0]).lower().endswith(exe)

    def _handle(self, info: dict) -> ProcessHandle:
        created = info.get("create_time")
        started = datetime.fromtimestamp(created, tz=timezone.utc) if created else datetime.now(timezone.utc)
        return ProcessHandle(
            pid=info["pid"],
            name=info.get("name") or "",
            started_at=started,
            cmdline=list(info.get("cmdline") or []),
        )

    def candidates(self) -> List[ProcessHandle]:
        out = []
        for proc in psutil.process_iter(["pid", "name", "cmdline", "create_time"]):
            info = proc.info
            if self._is_server_exe(info.get("name"), info.get("cmdline") or []):
                out.append(self._handle(info))
        return out

    def find(self, server_name: str, server_dir: Path) -> Optional[ProcessHandle]:
        handle = pick_best(self.candidates(), server_name, server_dir)
        if handle:
            log.debug("Matched %s to pid=%s", server_name, handle.pid)
        return handle

    def get(self, pid: int) -> Optional[ProcessHandle]:
        try:
            proc = psutil.Process(pid)
            if not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE:
                return None
            info = {"pid": pid, "create_time": proc.create_time()}
        except psutil.NoSuchProcess:
            return None
        except psutil.AccessDenied:
            log.debug("Access denied reading pid=%s", pid)
            return ProcessHandle(pid=pid, name="", started_at=datetime.now(timezone.utc))
        try:
            with proc.oneshot():
                info["name"] = proc.name()
                info["cmdline"] = proc.cmdline()
        except psutil.NoSuchProcess:
            return None
        except psutil.AccessDenied:
            # start time still identifies the process
            log.debug("Access denied reading cmdline of pid=%s", pid)
        return self._handle(info)
