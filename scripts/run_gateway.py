#!/usr/bin/env python3
"""
Run the chat gateway.

Starts the HTTP/event server, then begins session establishment, and runs
until SIGINT/SIGTERM (or --duration-s).

Usage:
    python -m scripts.run_gateway                      # dry run, in-memory transport
    python -m scripts.run_gateway --transport bridge --bridge-url ws://127.0.0.1:8787/session
    python -m scripts.run_gateway --port 8080 --log-format text -v

Settings come from CHATGATE_* environment variables; flags override them.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys
from collections.abc import Mapping, Sequence

from chatgate.config import GatewayConfig, ServerConfig
from chatgate.gateway import Gateway
from chatgate.logging_config import setup_logging
from chatgate.server.app import start_server, stop_server

logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Single-session outbound chat gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Bind address (env CHATGATE_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (env CHATGATE_PORT)")
    parser.add_argument(
        "--transport",
        choices=["memory", "bridge"],
        default=None,
        help="Session transport (env CHATGATE_TRANSPORT, default: memory)",
    )
    parser.add_argument(
        "--bridge-url",
        type=str,
        default=None,
        help="Bridge WebSocket URL (env CHATGATE_BRIDGE_URL)",
    )
    parser.add_argument(
        "--country-code",
        type=str,
        default=None,
        help="Country code for bare local numbers (env CHATGATE_DEFAULT_COUNTRY_CODE)",
    )
    parser.add_argument(
        "--no-auto-ready",
        action="store_true",
        help="Memory transport: stay disconnected until driven explicitly",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        default=None,
        help="Log output format (env CHATGATE_JSON_LOGS)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--duration-s",
        type=int,
        default=None,
        help="Stop after N seconds (default: run until signal)",
    )
    return parser


def config_from_args(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> GatewayConfig:
    """Environment first, then flag overrides."""
    config = GatewayConfig.from_env(environ)

    server = ServerConfig(
        host=args.host if args.host is not None else config.server.host,
        port=args.port if args.port is not None else config.server.port,
    )
    bridge = config.bridge
    if args.bridge_url is not None:
        bridge = dataclasses.replace(bridge, url=args.bridge_url)
    pipeline = config.pipeline
    if args.country_code is not None:
        pipeline = dataclasses.replace(pipeline, default_country_code=args.country_code)

    return dataclasses.replace(
        config,
        server=server,
        transport=args.transport or config.transport,
        auto_ready=config.auto_ready and not args.no_auto_ready,
        bridge=bridge,
        pipeline=pipeline,
        log_level="DEBUG" if args.verbose else config.log_level,
        json_logs=config.json_logs if args.log_format is None else args.log_format == "json",
    )


def setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """Signal handlers only set the stop event; shutdown runs in run_gateway()."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: int, frame: object) -> None:
        logger.info("Received signal %s, initiating shutdown", signal.Signals(sig).name)
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def run_gateway(config: GatewayConfig, *, duration_s: int | None = None) -> int:
    """
    Run the gateway until signalled.

    Returns:
        Exit code (0 = success).
    """
    gateway = Gateway(config)
    runner = await start_server(gateway, config.server.host, config.server.port)

    stop_event = asyncio.Event()
    setup_signal_handlers(stop_event)

    try:
        await gateway.start()
        if duration_s is None:
            await stop_event.wait()
        else:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=duration_s)
            except asyncio.TimeoutError:
                logger.info("Duration elapsed, stopping")
        return 0
    except Exception as e:
        logger.exception("Gateway failed", extra={"error": str(e)})
        return 1
    finally:
        await gateway.stop()
        await stop_server(runner)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    try:
        config = config_from_args(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(level=config.log_level, json_format=config.json_logs)
    logger.info(
        "Starting chat gateway",
        extra={
            "transport": config.transport,
            "port": config.server.port,
            "max_per_window": config.rate_limit.max_per_window,
            "min_spacing_ms": config.rate_limit.min_spacing_ms,
        },
    )
    return asyncio.run(run_gateway(config, duration_s=args.duration_s))


if __name__ == "__main__":
    sys.exit(main())
