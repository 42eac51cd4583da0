from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from .bridge_controller import Hub
from .errors import ConfigError
from .hub_config import HubSettings, init_config
from .logging_setup import logger, setup_logging


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ble-mqtt-hub",
        description="Bridge BLE peripherals to an MQTT broker.",
    )
    p.add_argument("--config", type=Path, help="YAML config file (overrides CONFIG_PATH)")
    p.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    p.add_argument("--max-devices", type=int, help="Concurrent connection limit")
    p.add_argument(
        "--device",
        action="append",
        dest="devices",
        metavar="ID",
        help="Device id to connect at startup (repeatable)",
    )
    return p


def resolve_settings(args: argparse.Namespace) -> HubSettings:
    cfg, src = init_config(yaml_paths=[args.config] if args.config else None)
    cfg = dict(cfg)
    if args.max_devices is not None:
        cfg["MAX_DEVICES"] = args.max_devices
    if args.devices:
        cfg["DEVICE_IDS"] = args.devices
    if args.log_level:
        cfg["LOG_LEVEL"] = args.log_level
    logger.debug({"event": "config_resolved", "source": str(src) if src else None})
    return HubSettings.from_mapping(cfg)


async def run(settings: HubSettings, stop: asyncio.Event | None = None) -> int:
    loop = asyncio.get_running_loop()
    stop = stop or asyncio.Event()

    def _on_signal(signum: int) -> None:
        logger.info({"event": "signal_received", "signal": signum})
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, int(sig))
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, lambda s, _f: loop.call_soon_threadsafe(_on_signal, s))

    hub = Hub.from_settings(settings, loop)
    await hub.start()
    try:
        await stop.wait()
    finally:
        result = await hub.shutdown()
    return 0 if result.all_ok else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        settings = resolve_settings(args)
    except ConfigError as e:
        logger.error({"event": "config_invalid", "error": str(e)})
        return 2
    setup_logging(settings.log_level)
    logger.info({"event": "main_start", "max_devices": settings.max_devices})
    try:
        return asyncio.run(run(settings))
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.exception({"event": "main_fatal", "error": repr(e)})
        return 1


if __name__ == "__main__":
    sys.exit(main())
