from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from pester.server.config import CONFIG_PATH, ServerConfig, load_config
from pester.server.runtime import ServerRuntime

log = logging.getLogger("pester.cmd.server")


async def _run(config: ServerConfig) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def build_config(args: argparse.Namespace) -> ServerConfig:
    path: Optional[Path] = Path(args.config) if args.config else None
    if path is None and CONFIG_PATH.exists():
        path = CONFIG_PATH
    config = load_config(path)

    overrides = {}
    if args.listen:
        overrides["listen"] = args.listen
    if args.tcp_listen is not None:
        overrides["tcp_listen"] = args.tcp_listen or None
    if args.log_level:
        overrides["log_level"] = args.log_level
    if overrides:
        config = ServerConfig.model_validate({**config.model_dump(), **overrides})
    return config


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Pester in-memory presence and message relay")
    parser.add_argument("--config", help=f"Path to server YAML config (default: {CONFIG_PATH} if present)")
    parser.add_argument("--listen", help="WebSocket listen address host:port")
    parser.add_argument("--tcp-listen", help="Raw TCP listen address host:port; empty string disables it")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except (OSError, ValueError) as exc:
        parser.error(str(exc))

    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
