from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Sequence

import orjson
import uvicorn

from radius_portal.api.app import create_app
from radius_portal.config.loader import ConfigLoadError, load_config
from radius_portal.config.schema import PortalConfig
from radius_portal.radius.codec import EncodeError
from radius_portal.radius.policy import FilterIdPolicy
from radius_portal.udp.exchange import RadiusExchange

LOG = logging.getLogger("radius_portal")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True, slots=True)
class CliSettings:
    log_level: str
    log_file: str | None

    # config
    config_path: str | None

    # REST
    rest_host: str
    rest_port: int

    # check
    username: str | None = None
    password: str | None = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="radius-portal")

    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "info"),
        choices=("critical", "error", "warning", "info", "debug"),
        help="Log level (default: env LOG_LEVEL or info)",
    )
    parser.add_argument(
        "--log-file",
        default=os.getenv("LOG_FILE") or None,
        help="Also append log records to this file (default: env LOG_FILE)",
    )
    parser.add_argument(
        "--config",
        dest="config_path",
        default=os.getenv("PORTAL_CONFIG") or None,
        help="YAML/JSON config file; RADIUS_* and ACCESS_* env vars override it",
    )

    sub = parser.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Run the captive portal API")
    serve.add_argument("--host", dest="rest_host", type=str, default="0.0.0.0")
    serve.add_argument("--port", dest="rest_port", type=int, default=int(os.getenv("PORT", "3000")))

    check = sub.add_parser("check", help="Run one RADIUS authentication and print the outcome")
    check.add_argument("--username", required=True)
    check.add_argument("--password", default=None, help="Prompted for when omitted")

    return parser


def parse_settings(argv: Sequence[str] | None) -> tuple[str, CliSettings]:
    ns = build_parser().parse_args(argv)

    settings = CliSettings(
        log_level=ns.log_level,
        log_file=ns.log_file,
        config_path=ns.config_path,
        rest_host=getattr(ns, "rest_host", "0.0.0.0"),
        rest_port=getattr(ns, "rest_port", 3000),
        username=getattr(ns, "username", None),
        password=getattr(ns, "password", None),
    )
    return ns.cmd, settings


def setup_logging(level: str, log_file: str | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=LOG_FORMAT,
        handlers=handlers,
    )


async def install_shutdown_signals(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _handler() -> None:
        LOG.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: _handler())


async def run_uvicorn_app(settings: CliSettings, config: PortalConfig, stop_event: asyncio.Event) -> None:
    """
    Runs uvicorn programmatically. stop_event triggers graceful shutdown.
    """
    app = create_app(config)

    uvicorn_config = uvicorn.Config(
        app=app,
        host=settings.rest_host,
        port=settings.rest_port,
        log_level=settings.log_level,
        loop="asyncio",
        lifespan="on",
        access_log=False,
        reload=False,
    )
    server = uvicorn.Server(uvicorn_config)

    async def _watch_stop() -> None:
        await stop_event.wait()
        server.should_exit = True

    watcher = asyncio.create_task(_watch_stop())
    try:
        await server.serve()
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher


async def run_check(settings: CliSettings, config: PortalConfig) -> int:
    """
    Authenticate once against the configured server and print the result
    and the Filter-Id decision as JSON. Exit code 0 only when access would
    be granted.
    """
    username = settings.username or ""
    password = settings.password if settings.password is not None else getpass.getpass("Password: ")

    exchange = RadiusExchange(config.radius)
    policy = FilterIdPolicy.from_config(config.access_policy)

    try:
        result = await exchange.authenticate(username, password)
    except EncodeError as exc:
        LOG.error("Cannot build Access-Request: %s", exc)
        return 2

    report: dict[str, object] = {
        "server": f"{config.radius.host}:{config.radius.port}",
        "outcome": result.outcome.value,
        "reason": result.reason,
        "attributes": result.attributes,
    }

    allowed = False
    if result.accepted:
        decision = policy.authorize(result.attributes)
        allowed = decision.allowed
        report["authorization"] = {
            "allowed": decision.allowed,
            "filterId": decision.filter_id,
            "message": decision.message,
        }

    sys.stdout.write(orjson.dumps(report, option=orjson.OPT_INDENT_2, default=str).decode() + "\n")
    return 0 if allowed else 1


async def main_async(argv: Sequence[str] | None = None) -> int:
    cmd, settings = parse_settings(argv)
    setup_logging(settings.log_level, settings.log_file)

    try:
        config = load_config(settings.config_path)
    except ConfigLoadError as exc:
        LOG.critical("%s", exc)
        return 1

    if cmd == "check":
        return await run_check(settings, config)

    if cmd != "serve":
        raise SystemExit(2)

    stop_event = asyncio.Event()
    await install_shutdown_signals(stop_event)

    task = asyncio.create_task(run_uvicorn_app(settings, config, stop_event))
    try:
        await task
    except Exception as exc:
        LOG.exception("Task failed", exc_info=exc)
        return 1

    return 0


def main(argv: Sequence[str] | None = None) -> int:
    return asyncio.run(main_async(argv))


if __name__ == "__main__":
    raise SystemExit(main())
