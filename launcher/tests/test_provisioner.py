"""
Tests for server/cluster provisioning, backups and restore (SKIP_INSTALL, no SteamCMD).
"""

import json

import pytest

from asa_launcher.config.file_layout import FleetLayout
from asa_launcher.config_generator import GAME_INI, GAME_SESSION, parse_ini
from asa_launcher.errors import ConfigValidationError, DuplicateNameError, FilesystemError, PortCollisionError
from asa_launcher.models import ClusterCreateRequest, MemberSpec, ServerConfig


def _req(name="c1", count=3, **kw):
    return ClusterCreateRequest(name=name, server_count=count, admin_password="adminpw", **kw)


class TestPlanCluster:
    def test_offset_port_scheme(self, provisioner):
        cluster, members = provisioner.plan_cluster(_req(base_port=7777))
        assert [m.game_port for m in members] == [7777, 7877, 7977]
        assert [m.query_port for m in members] == [7778, 7878, 7978]
        assert [m.rcon_port for m in members] == [7779, 7879, 7979]
        assert [m.name for m in members] == ["c1-1", "c1-2", "c1-3"]
        assert all(m.cluster_id == "c1" for m in members)
        assert cluster.members == ["c1-1", "c1-2", "c1-3"]

    def test_server_count_bounds(self, provisioner):
        with pytest.raises(ConfigValidationError):
            provisioner.plan_cluster(_req(count=0))
        with pytest.raises(ConfigValidationError):
            provisioner.plan_cluster(_req(count=11))

    def test_explicit_member_spec_wins(self, provisioner):
        req = _req(count=2, members=[MemberSpec(name="island", map="TheIsland"),
                                     MemberSpec(name="scorched", map="ScorchedEarth", game_port=9000)])
        _, members = provisioner.plan_cluster(req)
        assert [m.name for m in members] == ["island", "scorched"]
        assert members[1].map == "ScorchedEarth"
        assert members[1].game_port == 9000
        assert members[1].query_port == 7878

    def test_cluster_password_becomes_join_password(self, provisioner):
        _, members = provisioner.plan_cluster(_req(count=1, cluster_password="join"))
        assert members[0].server_password == "join"


class TestCreateCluster:
    async def test_creates_members_on_disk(self, provisioner, store, layout):
        messages = []
        results = await provisioner.create_cluster(_req(), progress=lambda m, percent=None: messages.append(m))
        assert [r.success for r in results] == [True, True, True]
        assert store.get_cluster("c1").members == ["c1-1", "c1-2", "c1-3"]
        assert layout.cluster_data_dir("c1").is_dir()
        for name in ("c1-1", "c1-2", "c1-3"):
            server_dir = layout.server_dir(name, "c1")
            assert (server_dir / "start.sh").exists()
            assert (FleetLayout.config_dir(server_dir) / "GameUserSettings.ini").exists()
            snapshot = json.loads((server_dir / "server-config.json").read_text(encoding="utf-8"))
            assert snapshot["name"] == name
            assert "saves" in snapshot["paths"]
        assert "-clusterid=c1" in (layout.server_dir("c1-2", "c1") / "start.sh").read_text(encoding="utf-8")
        assert messages[0].startswith("Validating")

    async def test_port_collision_aborts_before_any_write(self, provisioner, store):
        store.save_server(ServerConfig(name="other", game_port=7877, query_port=30000, rcon_port=30001,
                                       admin_password="x"))
        with pytest.raises(PortCollisionError):
            await provisioner.create_cluster(_req())
        assert not store.has_cluster("c1")
        assert not store.has_server("c1-1")

    async def test_existing_cluster_rejected(self, provisioner):
        await provisioner.create_cluster(_req(count=1))
        with pytest.raises(DuplicateNameError):
            await provisioner.create_cluster(_req(count=1, base_port=9000))

    async def test_partial_member_failure(self, provisioner, store, monkeypatch):
        original = provisioner.configs.write

        def flaky(cfg, server_dir, cluster=None):
            if cfg.name == "c1-2":
                raise FilesystemError("write ini", server_dir, OSError("disk full"))
            return original(cfg, server_dir, cluster)

        monkeypatch.setattr(provisioner.configs, "write", flaky)
        results = await provisioner.create_cluster(_req())
        assert [(r.name, r.success) for r in results] == [("c1-1", True), ("c1-2", False), ("c1-3", True)]
        assert "disk full" in results[1].error
        assert store.get_cluster("c1").members == ["c1-1", "c1-3"]
        assert not store.has_server("c1-2")


class TestServers:
    async def test_create_standalone_server(self, provisioner, store, layout):
        cfg = ServerConfig(name="solo", admin_password="pw", mods=[5])
        await provisioner.create_server(cfg)
        assert store.has_server("solo")
        assert (layout.server_dir("solo") / "start.sh").exists()
        assert FleetLayout.save_dir(layout.server_dir("solo")).is_dir()

    async def test_naming_rule_applied_on_create(self, provisioner, store):
        await provisioner.create_server(ServerConfig(name="club-pve", admin_password="pw"))
        saved = store.get_server("club-pve")
        assert saved.mods == [1005639]
        assert saved.exclude_shared_mods is True

    async def test_update_rejects_rename(self, provisioner):
        await provisioner.create_server(ServerConfig(name="solo", admin_password="pw"))
        with pytest.raises(ConfigValidationError):
            await provisioner.update_server_settings("solo", {"name": "other"})

    async def test_update_ports_checked(self, provisioner, store):
        await provisioner.create_server(ServerConfig(name="a", admin_password="pw"))
        await provisioner.create_server(ServerConfig(name="b", game_port=8000, query_port=8001, rcon_port=8002,
                                                     admin_password="pw"))
        with pytest.raises(PortCollisionError):
            await provisioner.update_server_settings("b", {"rcon_port": 7777})
        updated = await provisioner.update_server_settings("b", {"max_players": 10, "rcon_port": 8005})
        assert store.get_server("b").rcon_port == 8005
        assert updated.max_players == 10

    async def test_regenerate_all(self, provisioner):
        await provisioner.create_server(ServerConfig(name="a", admin_password="pw"))
        results = await provisioner.regenerate_all_start_scripts()
        assert [(r.name, r.success) for r in results] == [("a", True)]

    async def test_delete_server_updates_cluster(self, provisioner, store, layout):
        await provisioner.create_cluster(_req(count=2))
        await provisioner.delete_server("c1-1")
        assert not store.has_server("c1-1")
        assert not layout.server_dir("c1-1", "c1").exists()
        assert store.get_cluster("c1").members == ["c1-2"]

    async def test_deleting_last_member_removes_cluster(self, provisioner, store, layout):
        """Nach dem letzten Mitglied verschwindet auch der Cluster samt Verzeichnis."""
        await provisioner.create_cluster(_req(count=1))
        await provisioner.delete_server("c1-1")
        assert not store.has_server("c1-1")
        assert not store.has_cluster("c1")
        assert not layout.cluster_dir("c1").exists()
        assert [c.name for c in store.list_clusters()] == []


class TestBackups:
    async def test_server_backup_and_restore(self, provisioner, layout):
        await provisioner.create_server(ServerConfig(name="solo", admin_password="pw"))
        save = FleetLayout.save_dir(layout.server_dir("solo")) / "TheIsland_WP.ark"
        save.write_bytes(b"v1")

        info = await provisioner.backup_server("solo")
        assert provisioner.list_backups("server")[0].id == info.id

        save.write_bytes(b"v2")
        await provisioner.restore_server(info.id)
        assert save.read_bytes() == b"v1"

    async def test_restore_brings_back_settings(self, provisioner, store, layout):
        """Restore setzt auch die Einstellungen aus dem Snapshot zurück, nicht nur die Spielstände."""
        await provisioner.create_server(ServerConfig(name="solo", admin_password="pw", max_players=10))
        info = await provisioner.backup_server("solo")
        await provisioner.update_server_settings("solo", {"max_players": 50, "rcon_port": 27100})

        restored = await provisioner.restore_server(info.id)
        assert restored.max_players == 10
        assert store.get_server("solo").max_players == 10
        assert store.get_server("solo").rcon_port == 32330
        config_dir = FleetLayout.config_dir(layout.server_dir("solo"))
        game_ini = parse_ini((config_dir / GAME_INI).read_text(encoding="utf-8"))
        assert game_ini[GAME_SESSION]["MaxPlayers"] == "10"
        snapshot = json.loads((layout.server_dir("solo") / "server-config.json").read_text(encoding="utf-8"))
        assert snapshot["max_players"] == 10

    async def test_restore_into_other_server_keeps_its_identity(self, provisioner, store):
        await provisioner.create_server(ServerConfig(name="a", admin_password="pw", max_players=10))
        await provisioner.create_server(ServerConfig(name="b", game_port=8000, query_port=8001, rcon_port=8002,
                                                     admin_password="pw"))
        info = await provisioner.backup_server("a")
        restored = await provisioner.restore_server(info.id, target="b")
        assert restored.name == "b"
        assert restored.ports() == [8000, 8001, 8002]
        assert restored.max_players == 10
        assert store.get_server("a").ports() == [7777, 27015, 32330]

    async def test_restore_port_collision_checked_before_stop(self, provisioner, supervisor, finder):
        await provisioner.create_server(ServerConfig(name="a", admin_password="pw"))
        info = await provisioner.backup_server("a")
        await provisioner.update_server_settings("a", {"game_port": 9000, "query_port": 9001, "rcon_port": 9002})
        await provisioner.create_server(ServerConfig(name="b", admin_password="pw"))
        finder.add("a", 501)
        with pytest.raises(PortCollisionError):
            await provisioner.restore_server(info.id)
        assert finder.get(501) is not None

    async def test_restore_without_snapshot_keeps_current(self, provisioner, store, layout):
        await provisioner.create_server(ServerConfig(name="solo", admin_password="pw", max_players=10))
        info = await provisioner.backup_server("solo")
        (layout.server_backups_dir / info.id / "server-config.json").unlink()
        await provisioner.update_server_settings("solo", {"max_players": 50})
        restored = await provisioner.restore_server(info.id)
        assert restored.max_players == 50

    async def test_cluster_restore_brings_back_settings(self, provisioner, store):
        await provisioner.create_cluster(_req(count=2, cluster_password="old"))
        info = await provisioner.backup_cluster("c1")
        cluster = store.get_cluster("c1")
        cluster.password = "new"
        cluster.multipliers = {"XPMultiplier": 9.0}
        store.save_cluster(cluster)
        await provisioner.update_server_settings("c1-2", {"max_players": 5})

        await provisioner.restore_cluster(info.id)
        restored = store.get_cluster("c1")
        assert restored.password == "old"
        assert restored.multipliers["XPMultiplier"] == 3.0
        assert restored.members == ["c1-1", "c1-2"]
        assert store.get_server("c1-2").max_players == 70

    async def test_cluster_restore_requires_same_members(self, provisioner, store):
        await provisioner.create_cluster(_req(count=2))
        info = await provisioner.backup_cluster("c1")
        assert info.members == ["c1-1", "c1-2"]

        cluster = store.get_cluster("c1")
        cluster.members = ["c1-1"]
        store.save_cluster(cluster)
        with pytest.raises(ConfigValidationError):
            await provisioner.restore_cluster(info.id)

    async def test_cluster_restore_roundtrip(self, provisioner, layout):
        await provisioner.create_cluster(_req(count=2))
        save = FleetLayout.save_dir(layout.server_dir("c1-2", "c1")) / "map.ark"
        save.write_bytes(b"old")
        info = await provisioner.backup_cluster("c1")
        save.write_bytes(b"new")
        results = await provisioner.restore_cluster(info.id)
        assert all(r.success for r in results)
        assert save.read_bytes() == b"old"

    async def test_delete_cluster_takes_backup(self, provisioner, store, layout):
        await provisioner.create_cluster(_req(count=2))
        await provisioner.delete_cluster("c1")
        assert not store.has_cluster("c1")
        assert not store.has_server("c1-1")
        assert not layout.cluster_dir("c1").exists()
        backups = provisioner.list_backups("cluster", "c1")
        assert len(backups) == 1

    async def test_delete_cluster_without_backup(self, provisioner):
        await provisioner.create_cluster(_req(count=1))
        await provisioner.delete_cluster("c1", backup=False)
        assert provisioner.list_backups("cluster") == []
