from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict

import yaml

from chatroute.server.runtime import ServerRuntime

log = logging.getLogger("chatroute.cmd.server")


def load_config(config_path: Path | None, *, listen: str | None = None, log_level: str | None = None) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    if config_path is not None:
        config = yaml.safe_load(config_path.read_text()) or {}
        if not isinstance(config, dict):
            raise ValueError(f"{config_path}: top level must be a mapping")
    if listen:
        config["listen"] = listen
    elif os.environ.get("PORT"):
        host = str(config.get("listen") or "0.0.0.0:0").rsplit(":", 1)[0]
        config["listen"] = f"{host}:{os.environ['PORT']}"
    if log_level:
        config["log_level"] = log_level
    return config


async def _run(config: Dict[str, Any]) -> None:
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


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Real-time chat server")
    parser.add_argument("--config", type=Path, default=None, help="Path to server YAML config")
    parser.add_argument("--listen", default=None, help="host:port to bind (overrides config)")
    parser.add_argument("--log-level", default=None, help="Logging level (overrides config)")
    args = parser.parse_args(argv)

    config = load_config(args.config, listen=args.listen, log_level=args.log_level)
    level = str(config.get("log_level", "INFO")).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
