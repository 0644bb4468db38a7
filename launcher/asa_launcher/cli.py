from __future__ import annotations
import argparse
import asyncio
import json

import uvicorn

from .api import create_app
from .errors import LauncherError
from .models import ClusterCreateRequest
from .orchestrator import Orchestrator
from .settings import Settings
from .logging_setup import get_logger, setup_logging

log = get_logger("asa.launcher.cli")


def _print(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _progress(message: str, percent=None) -> None:
    prefix = f"[{percent:3d}%] " if percent is not None else "       "
    print(prefix + message, flush=True)


async def _lifecycle(orch: Orchestrator, action: str, args) -> int:
    if args.cluster:
        fn = {"start": orch.start_cluster, "stop": orch.stop_cluster, "restart": orch.restart_cluster}[action]
        results = await fn(args.name)
        _print([r.model_dump(mode="json") for r in results])
        return 0 if all(r.success for r in results) else 1
    fn = {"start": orch.start_server, "stop": orch.stop_server, "restart": orch.restart_server}[action]
    res = await fn(args.name)
    _print(res.model_dump(mode="json"))
    return 0 if res.success else 1


async def _run(orch: Orchestrator, args) -> int:
    if args.cmd == "status":
        if args.name:
            if orch.store.has_cluster(args.name):
                results = await orch.clusters.cluster_status(args.name)
                _print([r.model_dump(mode="json") for r in results])
            else:
                _print((await orch.supervisor.get_status(args.name)).model_dump(mode="json"))
        else:
            _print(await orch.list_servers())
        return 0

    if args.cmd in ("start", "stop", "restart"):
        return await _lifecycle(orch, args.cmd, args)

    if args.cmd == "rcon":
        print(await orch.rcon_command(args.name, " ".join(args.command)))
        return 0

    if args.cmd == "create-cluster":
        req = ClusterCreateRequest(
            name=args.name,
            server_count=args.servers,
            base_port=args.base_port,
            map=args.map,
            admin_password=args.admin_password,
            cluster_password=args.cluster_password or "",
            mods=args.mods,
        )
        results = await orch.provisioner.create_cluster(req, install=not args.no_install, progress=_progress)
        _print([r.model_dump(mode="json") for r in results])
        return 0 if any(r.success for r in results) else 1

    if args.cmd == "install":
        if args.steamcmd:
            print(await orch.steamcmd.ensure(progress=_progress))
            return 0
        names = [args.name] if args.name else [s.name for s in orch.store.list_servers()]
        for name in names:
            exe = await orch.provisioner.install_binaries(name, wait=not args.no_wait, progress=_progress)
            print(f"{name}: {exe}")
        return 0

    return 2


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="asa-launcher")
    sub = parser.add_subparsers(dest="cmd", required=True)

    api_p = sub.add_parser("api", help="Run REST API (FastAPI)")
    api_p.add_argument("--host", default="0.0.0.0")
    api_p.add_argument("--port", type=int, default=8000)

    status_p = sub.add_parser("status", help="Status of one server/cluster, or of the whole fleet")
    status_p.add_argument("name", nargs="?")

    for action in ("start", "stop", "restart"):
        p = sub.add_parser(action, help=f"{action.capitalize()} a server (or all members of a cluster)")
        p.add_argument("name")
        p.add_argument("--cluster", action="store_true", help="NAME is a cluster")

    rcon_p = sub.add_parser("rcon", help="Send an RCON command and print the response")
    rcon_p.add_argument("name")
    rcon_p.add_argument("command", nargs="+")

    cc_p = sub.add_parser("create-cluster", help="Provision a cluster of servers")
    cc_p.add_argument("name")
    cc_p.add_argument("--servers", type=int, default=2)
    cc_p.add_argument("--base-port", type=int, default=7777)
    cc_p.add_argument("--map", default="TheIsland")
    cc_p.add_argument("--admin-password", required=True)
    cc_p.add_argument("--cluster-password")
    cc_p.add_argument("--mods", type=int, nargs="*", default=[])
    cc_p.add_argument("--no-install", action="store_true", help="Skip SteamCMD (configs + scripts only)")

    inst_p = sub.add_parser("install", help="Install/update ASA binaries via SteamCMD")
    inst_p.add_argument("name", nargs="?", help="Server name (default: all servers)")
    inst_p.add_argument("--no-wait", action="store_true", help="Fail if another install is running")
    inst_p.add_argument("--steamcmd", action="store_true", help="Only locate or download steamcmd itself")

    args = parser.parse_args(argv)
    settings = Settings()
    setup_logging(settings)

    if args.cmd == "api":
        app = create_app(settings)
        uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())
        return 0

    orch = Orchestrator(settings)
    orch.prepare_environment()
    try:
        return asyncio.run(_run(orch, args))
    except LauncherError as e:
        log.error("%s failed: %s", args.cmd, e)
        return 1
