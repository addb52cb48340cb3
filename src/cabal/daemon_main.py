from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn
import yaml  # type: ignore

from .daemon.bridge import UIBridge
from .daemon.cabal import Cabal
from .kernel.settings import CabalSettings, Endpoint, load_settings
from .util.obslog import setup_root_json_logging

logger = logging.getLogger("cabal.daemon_main")

MOCK_AGENT_COMMAND = [sys.executable, "-m", "cabal.mock_agent"]


def _settings_from_args(args: argparse.Namespace) -> CabalSettings:
    settings = load_settings(
        Path(args.config).expanduser() if args.config else None,
        max_agents=getattr(args, "max_agents", None),
    )
    if getattr(args, "mock", False):
        settings.agent_command = list(MOCK_AGENT_COMMAND)
    host = getattr(args, "host", None)
    port = getattr(args, "port", None)
    if host is not None or port is not None:
        settings.bridge = Endpoint(
            host=host if host is not None else settings.bridge.host,
            port=port if port is not None else settings.bridge.port,
        )
    web_port = getattr(args, "web_port", None)
    if web_port is not None:
        base = settings.web or Endpoint(host=settings.bridge.host, port=8848)
        settings.web = Endpoint(host=base.host, port=web_port)
    return settings


async def serve(settings: CabalSettings, *, swarm: int = 0, log_level: str = "info") -> int:
    cabal = Cabal(settings)
    bridge = UIBridge(cabal, host=settings.bridge.host, port=settings.bridge.port)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    web_server: Optional[uvicorn.Server] = None
    web_task: Optional["asyncio.Task[None]"] = None
    try:
        cabal.start()
        await bridge.start()
        if settings.web is not None:
            from .ports.web.app import create_app

            config = uvicorn.Config(
                create_app(cabal),
                host=settings.web.host,
                port=settings.web.port,
                log_level=str(log_level).lower(),
            )
            web_server = uvicorn.Server(config)
            # signals are handled here, not by uvicorn
            web_server.install_signal_handlers = lambda: None  # type: ignore[method-assign]
            web_task = asyncio.ensure_future(web_server.serve())
            logger.info("web port on %s:%s", settings.web.host, settings.web.port)
        if swarm > 0:
            await cabal.create_swarm(swarm)
        await stop.wait()
        logger.info("shutdown requested")
    finally:
        if web_server is not None:
            web_server.should_exit = True
        if web_task is not None:
            await asyncio.gather(web_task, return_exceptions=True)
        await bridge.stop()
        await cabal.shutdown()
        await cabal.bus.close()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="cabald", description="cabal daemon (agent multiplexer + UI bridge)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Run daemon in foreground")
    run.add_argument("--config", default=None, help="Settings YAML (default: $CABAL_HOME/settings.yaml)")
    run.add_argument("--host", default=None, help="UI bridge bind host")
    run.add_argument("--port", type=int, default=None, help="UI bridge port (0 = pick a free port)")
    run.add_argument("--web-port", type=int, default=None, help="Also serve the HTTP API on this port")
    run.add_argument("--max-agents", type=int, default=None, help="Concurrent agent limit")
    run.add_argument("--mock", action="store_true", help="Use the built-in mock agent instead of agent_command")
    run.add_argument("--swarm", type=int, default=0, help="Spawn N generic agents at startup")
    run.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")

    cfg = sub.add_parser("config", help="Print effective settings")
    cfg.add_argument("--config", default=None, help="Settings YAML (default: $CABAL_HOME/settings.yaml)")

    args = parser.parse_args(argv)

    try:
        settings = _settings_from_args(args)
    except ValueError as e:
        print(f"cabald: {e}", file=sys.stderr)
        return 2

    if args.cmd == "config":
        print(yaml.safe_dump(settings.model_dump(exclude_none=True), allow_unicode=True, sort_keys=False), end="")
        return 0

    if args.cmd == "run":
        setup_root_json_logging(component="cabald", level=str(args.log_level))
        try:
            return int(asyncio.run(serve(settings, swarm=int(args.swarm), log_level=str(args.log_level))))
        except KeyboardInterrupt:
            return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
