from __future__ import annotations
import asyncio
from typing import Awaitable, Callable, List

from .config.storage_backend import FileConfigStore
from .errors import LauncherError
from .models import MemberResult
from .supervisor import ProcessSupervisor
from .logging_setup import get_logger

log = get_logger("asa.launcher.cluster")


class ClusterCoordinator:
    """Fans supervisor operations out over cluster members, one MemberResult each."""

    def __init__(self, store: FileConfigStore, supervisor: ProcessSupervisor):
        self.store = store
        self.supervisor = supervisor

    async def _fan_out(self, cluster: str, op: str, fn: Callable[[str], Awaitable]) -> List[MemberResult]:
        members = self.store.get_cluster(cluster).members

        async def one(name: str) -> MemberResult:
            try:
                res = await fn(name)
            except LauncherError as e:
                log.warning("%s %s/%s failed: %s", op, cluster, name, e)
                return MemberResult(name=name, success=False, error=str(e))
            detail = res.model_dump(mode="json") if hasattr(res, "model_dump") else None
            success = getattr(res, "success", True)
            return MemberResult(name=name, success=success, error=None if success else getattr(res, "message", None),
                                detail=detail)

        results = await asyncio.gather(*(one(m) for m in members))
        ok = sum(1 for r in results if r.success)
        log.info("%s cluster %s: %d/%d members ok", op, cluster, ok, len(results))
        return list(results)

    async def start_cluster(self, cluster: str) -> List[MemberResult]:
        return await self._fan_out(cluster, "start", self.supervisor.start)

    async def stop_cluster(self, cluster: str) -> List[MemberResult]:
        return await self._fan_out(cluster, "stop", self.supervisor.stop)

    async def restart_cluster(self, cluster: str) -> List[MemberResult]:
        return await self._fan_out(cluster, "restart", self.supervisor.restart)

    async def cluster_status(self, cluster: str) -> List[MemberResult]:
        return await self._fan_out(cluster, "status", self.supervisor.get_status)
