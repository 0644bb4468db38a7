"""
Tests for the job manager state machine and the auto-shutdown timers.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from asa_launcher.autoshutdown import AutoShutdownService
from asa_launcher.errors import JobStateError, NotFoundError
from asa_launcher.jobs import JobManager
from asa_launcher.models import AutoShutdownPolicy, JobStatus, ServerConfig


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += timedelta(**kw)


class TestJobManager:
    def test_forward_only_transitions(self):
        jobs = JobManager()
        job = jobs.create_job("create-cluster", {"cluster": "c"})
        assert job.status == JobStatus.pending
        with pytest.raises(JobStateError):
            jobs.update_job(job.id, {"status": JobStatus.completed})
        jobs.update_job(job.id, {"status": JobStatus.running})
        jobs.update_job(job.id, {"status": JobStatus.completed, "result": {"ok": 1}})
        with pytest.raises(JobStateError):
            jobs.update_job(job.id, {"status": JobStatus.running})
        with pytest.raises(JobStateError):
            jobs.add_progress(job.id, "late")
        assert jobs.get_job(job.id).result == {"ok": 1}

    def test_unknown_fields_rejected(self):
        jobs = JobManager()
        job = jobs.create_job("x")
        with pytest.raises(JobStateError):
            jobs.update_job(job.id, {"id": "other"})

    def test_missing_job(self):
        with pytest.raises(NotFoundError):
            JobManager().get_job("nope")

    def test_progress_is_append_only_and_published(self):
        jobs = JobManager()
        events = []
        jobs.add_hook(events.append)
        jobs.add_hook(lambda e: 1 / 0)
        job = jobs.create_job("x")
        jobs.update_job(job.id, {"status": "running"})
        jobs.add_progress(job.id, "step 1", percent=30)
        jobs.add_progress(job.id, "step 2")
        snapshot = jobs.get_job(job.id)
        assert [p.message for p in snapshot.progress] == ["step 1", "step 2"]
        assert [e.status for e in events] == [JobStatus.pending, JobStatus.running, JobStatus.running,
                                              JobStatus.running]
        assert events[2].progress == 30
        assert events[3].message == "step 2"

    def test_returned_jobs_are_copies(self):
        jobs = JobManager()
        job = jobs.create_job("x")
        job.progress.append("tampered")
        assert jobs.get_job(job.id).progress == []

    def test_prune(self):
        clock = FakeClock()
        jobs = JobManager(clock=clock)
        old = jobs.create_job("x")
        jobs.update_job(old.id, {"status": "running"})
        jobs.update_job(old.id, {"status": "failed", "error": "boom"})
        running = jobs.create_job("y")
        jobs.update_job(running.id, {"status": "running"})
        clock.advance(hours=25)
        assert jobs.prune_jobs() == 1
        assert [j.id for j in jobs.list_jobs()] == [running.id]

    async def test_submit_success(self):
        jobs = JobManager()

        async def op(ctx):
            ctx("working", 50)
            return {"members": 2}

        job = jobs.submit("t", {}, op)
        done = await jobs.wait(job.id)
        assert done.status == JobStatus.completed
        assert done.result == {"members": 2}
        assert done.progress[0].message == "working"

    async def test_submit_failure(self):
        jobs = JobManager()

        async def op(ctx):
            raise RuntimeError("no member could be created")

        job = jobs.submit("t", {}, op)
        done = await jobs.wait(job.id)
        assert done.status == JobStatus.failed
        assert done.error == "no member could be created"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(settings, store, rcon, clock):
    store.save_server(ServerConfig(name="alpha", admin_password="pw"))
    svc = AutoShutdownService(settings, store, rcon_factory=lambda cfg: rcon, clock=clock)
    svc.initialize("alpha", AutoShutdownPolicy(enabled=True, timeout_minutes=30, save_timeout_seconds=0.05))
    return svc


class TestAutoShutdown:
    async def test_staged_warnings_then_shutdown(self, service, rcon, clock):
        events = []

        async def listener(event):
            events.append(event)

        service.add_listener(listener)
        assert service.start_monitoring("alpha", run=False)

        clock.advance(minutes=10)
        assert await service.tick("alpha") == "waiting"
        assert not any(c.startswith("Broadcast") for c in rcon.calls)

        clock.advance(minutes=6)  # 14 min left
        await service.tick("alpha")
        clock.advance(minutes=5)  # 9 min left
        await service.tick("alpha")
        broadcasts = [c for c in rcon.calls if c.startswith("Broadcast")]
        assert len(broadcasts) == 2
        assert "15 minutes" in broadcasts[0]
        assert "10 minutes" in broadcasts[1]
        assert service.get_timer_info("alpha").warnings_sent == [15, 10]

        clock.advance(minutes=10)
        assert await service.tick("alpha") == "shutdown"
        assert "SaveWorld" in rcon.calls
        assert events == [{"type": "shutdown-requested", "server": "alpha", "reason": "auto_shutdown",
                           "saved": True}]
        assert service.get_timer_info("alpha") is None

    async def test_players_reset_deadline(self, service, rcon, clock):
        service.start_monitoring("alpha", run=False)
        clock.advance(minutes=25)
        await service.tick("alpha")
        rcon.players = ["Alice"]
        assert await service.tick("alpha") == "occupied"
        info = service.get_timer_info("alpha")
        assert info.remaining_seconds == pytest.approx(30 * 60)
        assert info.warnings_sent == []

    async def test_rcon_down_counts_as_empty(self, service, rcon, clock):
        service.start_monitoring("alpha", run=False)
        rcon.down = True
        clock.advance(minutes=31)
        assert await service.tick("alpha") == "shutdown"

    async def test_save_timeout_still_shuts_down(self, service, rcon, clock):
        events = []
        service.add_listener(events.append)
        service.start_monitoring("alpha", run=False)
        rcon.save_delay = 1.0
        clock.advance(minutes=31)
        assert await service.tick("alpha") == "shutdown"
        assert events[0]["saved"] is False

    async def test_global_disable_clears_timers(self, service):
        service.start_monitoring("alpha", run=False)
        service.set_enabled(False)
        assert service.all_timers() == []
        assert service.start_monitoring("alpha", run=False) is False

    async def test_disabled_policy(self, service):
        service.update_policy("alpha", {"enabled": False})
        assert service.start_monitoring("alpha", run=False) is False
        assert service.store.load_policy("alpha").enabled is False

    async def test_player_hooks(self, service):
        assert service.on_player_leave("alpha", 0)
        assert service.get_timer_info("alpha") is not None
        assert service.on_player_join("alpha")
        assert service.get_timer_info("alpha") is None
        assert service.on_player_leave("alpha", 2) is False

    async def test_background_loop_runs_ticks(self, service, rcon):
        service.update_policy("alpha", {"poll_interval_seconds": 1})
        rcon.players = ["Bob"]
        service.start_monitoring("alpha")
        await asyncio.sleep(0.05)
        assert "ListPlayers" in rcon.calls
        service.stop_monitoring("alpha")
