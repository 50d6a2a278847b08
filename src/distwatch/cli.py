"""Command line entry points: ``distwatch resolve`` and ``distwatch watch``."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, List, Optional

import yaml

from .args import parse_args
from .common.logging_utils import configure_logging, extra_context, is_debug_enabled
from .config import WatchConfig
from .constants import Constants, ExitCodes
from .models import ModuleDetails
from .watcher import Watcher

logger = logging.getLogger(__name__)


def _setup_logging(args: Any) -> None:
    """Configure logging based on CLI arguments.

    Args:
        args: Parsed CLI arguments.
    """
    # Honor CLI --loglevel
    if getattr(args, "LOG_LEVEL", None):
        os.environ[f"{Constants.ENV_PREFIX}LOG_LEVEL"] = str(args.LOG_LEVEL).upper()

    configure_logging()

    log_file = getattr(args, "LOG_FILE", None)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        )
        file_handler.setFormatter(formatter)
        logging.getLogger().addHandler(file_handler)
        logger.info("Logging to file: %s", log_file)


def _load_config(args: Any) -> Optional[WatchConfig]:
    try:
        return WatchConfig.from_args(args)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Could not read config file %s: %s", getattr(args, "CONFIG", None), e)
    except (TypeError, ValueError) as e:
        logger.error("Invalid configuration: %s", e)
    return None


async def resolve_once(name: str, tag: str, config: WatchConfig) -> ModuleDetails:
    """Run a single poll for ``tag`` and return the resulting details.

    Falls back to a local install exactly as a long-running watcher would.
    """
    watcher = Watcher(name, [tag], config)
    try:
        await watcher.poller(tag).poll_once()
        return await watcher.get(tag)
    finally:
        await watcher.close()


def run_resolve(args: Any) -> int:
    """Entry point for the resolve command."""
    config = _load_config(args)
    if config is None:
        return ExitCodes.FILE_ERROR.value

    try:
        details = asyncio.run(resolve_once(args.NAME, args.TAGS, config))
    except Exception as e:  # pylint: disable=broad-exception-caught
        sys.stderr.write(f"{e}\n")
        return ExitCodes.RESOLVE_ERROR.value

    print(json.dumps(details.to_dict(), indent=2, sort_keys=True))
    return ExitCodes.SUCCESS.value


async def watch_until_stopped(name: str, tags: List[str], config: WatchConfig) -> None:
    """Poll ``tags`` until SIGINT or SIGTERM arrives."""
    async with Watcher(name, tags, config) as watcher:
        stop_event = asyncio.Event()
        running_loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            running_loop.add_signal_handler(sig, stop_event.set)
        logger.info(
            "Watching %s (%s) every %ss",
            name,
            ", ".join(watcher.tags),
            config.period,
            extra=extra_context(event="watch_start", component="cli", package=name),
        )
        await stop_event.wait()
        logger.info("Shutdown signal received, stopping...")


def run_watch(args: Any) -> int:
    """Entry point for the watch command."""
    config = _load_config(args)
    if config is None:
        return ExitCodes.FILE_ERROR.value

    tags = args.TAGS or [config.default_tag]
    try:
        asyncio.run(watch_until_stopped(args.NAME, tags, config))
    except KeyboardInterrupt:
        # Platforms without loop signal handlers (Windows) land here
        pass
    logger.info("Watcher shutdown complete")
    return ExitCodes.SUCCESS.value


def main(argv=None) -> int:
    """Main function of the program."""
    args = parse_args(argv)
    _setup_logging(args)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND),
        )

    if args.COMMAND == "resolve":
        return run_resolve(args)
    return run_watch(args)


if __name__ == "__main__":
    sys.exit(main())
