import argparse
import asyncio
import dataclasses
import logging
import signal
import sys
from typing import Callable, List, Optional

from . import messages as m
from .config import (
    DEFAULT_SERVER_URL,
    AgentConfig,
    HubConfig,
    load_log_level,
    load_mode,
    normalize_server_url,
)
from .node import HubServer, PeerAgent

"""
run_node.py — single entry point for both roles.

- server: run the hub (WebSocket + HTTP roster query + dashboard) on PORT.
- client: run a peer agent against SERVER_URL.

Environment variables configure everything (see config.py); command-line
flags of the same meaning win over the environment.
"""

logger = logging.getLogger("rollcall")

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
BANNER_WIDTH = 56


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def banner_lines(title: str) -> List[str]:
    inner = BANNER_WIDTH - 2
    return [
        "+" + "-" * inner + "+",
        "|" + title.center(inner) + "|",
        "+" + "-" * inner + "+",
    ]


def print_agent_banner(config: AgentConfig) -> None:
    for line in banner_lines("ROLLCALL PEER AGENT"):
        print(line)
    print()
    host = m.environment_descriptor()["hostname"]
    print(f"Name:     {config.name}")
    print(f"Location: {config.location}")
    print(f"Hostname: {host}")
    print(f"Server:   {config.server_url}")
    print()
    print("=" * BANNER_WIDTH)
    print()


# -------------------------
# Interactive configuration
# -------------------------

def prompt_missing(config: AgentConfig, ask: Callable[[str], str] = input) -> AgentConfig:
    """
    Ask for whatever the environment and flags left empty.

    Empty answers keep the value empty; with_defaults() fills it later.
    """
    for line in banner_lines("ROLLCALL PEER AGENT"):
        print(line)
    print()

    server_url = config.server_url
    if not server_url:
        answer = ask("Hub address (host:port): ").strip()
        server_url = normalize_server_url(answer) if answer else DEFAULT_SERVER_URL

    name = config.name or ask("Your name: ").strip()
    location = config.location or ask("Your location: ").strip()
    print()
    return dataclasses.replace(config, server_url=server_url, name=name, location=location)


# -------------------------
# Process runners
# -------------------------

def _install_signal_handlers(loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except NotImplementedError:
            # No loop signal support on Windows; Ctrl+C still raises KeyboardInterrupt.
            return


async def run_hub(config: HubConfig) -> None:
    """Start the hub and serve until SIGINT/SIGTERM."""
    hub = HubServer(
        host=config.host,
        port=config.port,
        stale_timeout_ms=config.stale_timeout_ms,
        sweep_interval_ms=config.sweep_interval_ms,
    )
    try:
        await hub.listen()
    except OSError as exc:
        logger.error("Could not listen on %s:%d: %s", config.host, config.port, exc)
        raise SystemExit(1) from exc

    logger.info("Dashboard: http://localhost:%d", config.port)
    stop = asyncio.Event()
    _install_signal_handlers(asyncio.get_running_loop(), stop.set)
    try:
        await stop.wait()
    finally:
        await hub.stop()


async def run_agent(config: AgentConfig) -> None:
    """Run a peer agent until SIGINT/SIGTERM, then shut down gracefully."""
    agent = PeerAgent(
        config.server_url,
        name=config.name,
        location=config.location,
        heartbeat_interval_ms=config.heartbeat_interval_ms,
        reconnect_delay_ms=config.reconnect_delay_ms,
    )
    loop = asyncio.get_running_loop()
    shutdowns: List[asyncio.Task] = []
    _install_signal_handlers(loop, lambda: shutdowns.append(loop.create_task(agent.shutdown())))
    await agent.run()


# -------------------------
# Argument parsing
# -------------------------

def _positive_int(raw: str) -> int:
    value = int(raw)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {value}")
    return value


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Quick examples:
      Hub:    python -m rollcall --mode server --port 8080
      Agent:  python -m rollcall --mode client --server-url ws://hub:8080 --name alice --location NYC
    """
    p = argparse.ArgumentParser(prog="rollcall", description="Presence hub and peer agent.")
    p.add_argument("--mode", choices=["server", "client"], help="overrides MODE")
    p.add_argument("--log-level", help="overrides LOG_LEVEL (default INFO)")

    hub = p.add_argument_group("server mode")
    hub.add_argument("--host", help="overrides HOST")
    hub.add_argument("--port", type=_positive_int, help="overrides PORT")
    hub.add_argument("--stale-timeout", dest="stale_timeout_ms", type=_positive_int,
                     help="ms without heartbeat before eviction (STALE_TIMEOUT)")
    hub.add_argument("--sweep-interval", dest="sweep_interval_ms", type=_positive_int,
                     help="ms between eviction sweeps (SWEEP_INTERVAL)")

    agent = p.add_argument_group("client mode")
    agent.add_argument("--server-url", help="overrides SERVER_URL")
    agent.add_argument("--name", help="overrides CLIENT_NAME")
    agent.add_argument("--location", help="overrides CLIENT_LOCATION")
    agent.add_argument("--heartbeat-interval", dest="heartbeat_interval_ms", type=_positive_int,
                       help="ms between heartbeats (HEARTBEAT_INTERVAL)")
    agent.add_argument("--reconnect-delay", dest="reconnect_delay_ms", type=_positive_int,
                       help="ms before reconnecting (RECONNECT_DELAY)")
    return p.parse_args(argv)


def _overrides(args: argparse.Namespace, config) -> dict:
    names = {f.name for f in dataclasses.fields(config)}
    return {k: v for k, v in vars(args).items() if k in names and v is not None}


def build_hub_config(args: argparse.Namespace) -> HubConfig:
    config = HubConfig.from_env()
    return dataclasses.replace(config, **_overrides(args, config))


def build_agent_config(args: argparse.Namespace, interactive: bool) -> AgentConfig:
    config = AgentConfig.from_env()
    config = dataclasses.replace(config, **_overrides(args, config))
    if interactive and config.missing:
        config = prompt_missing(config)
    return config.with_defaults()


# -------------------------
# Main entrypoint
# -------------------------

def main(argv: Optional[List[str]] = None) -> None:
    """Pick the mode, load configuration and run until signalled."""
    args = parse_args(argv)
    try:
        mode = args.mode or load_mode()
        configure_logging(args.log_level or load_log_level())
        if mode == "server":
            hub_config = build_hub_config(args)
        else:
            agent_config = build_agent_config(args, interactive=sys.stdin.isatty())
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    logger.info("Starting in %s mode...", mode.upper())
    try:
        if mode == "server":
            asyncio.run(run_hub(hub_config))
        else:
            print_agent_banner(agent_config)
            asyncio.run(run_agent(agent_config))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
