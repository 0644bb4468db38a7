"""
Tests für das Zusammenspiel der Dienste im Orchestrator (Jobs, Auto-Shutdown, Logs).
"""

import pytest

from asa_launcher.errors import (
    ConfigValidationError,
    DuplicateNameError,
    FilesystemError,
    InstallBusyError,
    NotFoundError,
)
from asa_launcher.models import ClusterCreateRequest, JobStatus, ServerConfig
from asa_launcher.orchestrator import Orchestrator
from asa_launcher.steamcmd import SteamCMD


@pytest.fixture
def orch(settings, finder, runner, rcon):
    o = Orchestrator(settings, finder=finder, runner=runner, rcon_factory=lambda cfg: rcon)
    o.prepare_environment()
    return o


async def _server(orch, name="alpha"):
    job = await orch.create_server(ServerConfig(name=name, admin_password="pw"))
    done = await orch.jobs.wait(job.id)
    assert done.status == JobStatus.completed, done.error
    return done


class TestServerJobs:
    async def test_create_server_job_hides_passwords(self, orch):
        done = await _server(orch)
        assert done.result["name"] == "alpha"
        assert "admin_password" not in done.result

        listed = await orch.list_servers()
        assert "admin_password" not in listed[0]["config"]
        assert listed[0]["status"]["state"] == "stopped"

    async def test_duplicate_rejected_before_job(self, orch):
        await _server(orch)
        with pytest.raises(DuplicateNameError):
            await orch.create_server(ServerConfig(name="alpha", game_port=9000, query_port=9001,
                                                  rcon_port=9002, admin_password="pw"))
        assert len(orch.jobs.list_jobs()) == 1

    async def test_cluster_member_needs_cluster_path(self, orch):
        with pytest.raises(ConfigValidationError):
            await orch.create_server(ServerConfig(name="m", cluster_id="c", admin_password="pw"))

    async def test_install_without_wait_while_busy(self, orch, monkeypatch):
        await _server(orch)
        monkeypatch.setattr(SteamCMD, "busy", property(lambda self: True))
        with pytest.raises(InstallBusyError):
            await orch.install_binaries("alpha", wait=False)


class TestClusterJobs:
    async def test_no_member_created_fails_job(self, orch, monkeypatch):
        def broken(cfg, server_dir, cluster=None):
            raise FilesystemError("write ini", server_dir, OSError("read-only file system"))

        monkeypatch.setattr(orch.configs, "write", broken)
        job = await orch.create_cluster(ClusterCreateRequest(name="c", server_count=2, admin_password="pw"))
        done = await orch.jobs.wait(job.id)
        assert done.status == JobStatus.failed
        assert "No member of cluster c" in done.error
        assert not orch.store.has_cluster("c")

    async def test_list_clusters_reports_member_ports(self, orch):
        job = await orch.create_cluster(ClusterCreateRequest(name="c", server_count=2, admin_password="pw",
                                                             cluster_password="secret"))
        await orch.jobs.wait(job.id)
        clusters = orch.list_clusters()
        assert "password" not in clusters[0]
        assert [(s["name"], s["rcon_port"]) for s in clusters[0]["servers"]] == [("c-1", 7779), ("c-2", 7879)]


class TestAutoShutdownWiring:
    async def test_shutdown_request_stops_server(self, orch, finder, runner, rcon):
        await _server(orch)
        finder.add("alpha", 900)
        await orch._on_shutdown_requested({"type": "shutdown-requested", "server": "alpha"})
        assert runner.terminated == [900]
        assert "SaveWorld" not in rcon.calls

    async def test_start_arms_timer_and_stop_clears_it(self, orch):
        await _server(orch)
        orch.autoshutdown.update_policy("alpha", {"enabled": True})
        await orch.start_server("alpha")
        assert orch.autoshutdown.get_timer_info("alpha") is not None
        await orch.stop_server("alpha")
        assert orch.autoshutdown.get_timer_info("alpha") is None
        await orch.shutdown()

    async def test_crash_clears_timer(self, orch):
        await _server(orch)
        orch.autoshutdown.update_policy("alpha", {"enabled": True})
        assert orch.autoshutdown.start_monitoring("alpha", run=False)
        orch._on_supervisor_event({"type": "server-crashed", "server": "alpha", "reliable": False})
        assert orch.autoshutdown.get_timer_info("alpha") is None


class TestLogs:
    async def test_console_log_listed_but_launcher_log_hidden(self, orch):
        await _server(orch)
        (orch.layout.logs_dir / "alpha.console.log").write_text("booting\n", encoding="utf-8")
        (orch.layout.logs_dir / "launcher.log").write_text("internal\n", encoding="utf-8")

        ids = [e["id"] for e in orch.server_logs("alpha")]
        assert ids == ["alpha.console"]
        assert orch.server_log_path("alpha", "alpha.console").name == "alpha.console.log"
        with pytest.raises(NotFoundError):
            orch.server_log_path("alpha", "launcher")
        with pytest.raises(NotFoundError):
            orch.server_log_path("alpha", "../launcher")


class TestBinaries:
    async def test_status_lists_every_server(self, orch):
        await _server(orch)
        status = await orch.binaries_status()
        assert status["busy"] is False
        assert status["servers"]["alpha"]["installed"] is False
        assert status["servers"]["alpha"]["executable"].endswith("ArkAscendedServer.exe")

    async def test_steamcmd_job_uses_existing_install(self, orch, tmp_path, monkeypatch):
        existing = tmp_path / "bin" / "steamcmd.sh"
        existing.parent.mkdir()
        existing.write_text("#!/bin/sh\n", encoding="utf-8")
        monkeypatch.setattr(SteamCMD, "_candidates", lambda self: [existing])

        job = await orch.ensure_steamcmd()
        done = await orch.jobs.wait(job.id)
        assert done.status == JobStatus.completed, done.error
        assert done.result == {"steamcmd": str(existing)}
