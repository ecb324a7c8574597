import argparse
import asyncio
import logging
import signal

import httpx

from sitewatch.config import Settings, load_settings
from sitewatch.domain import ConfigError, SiteWatchError
from sitewatch.worker import build_watcher


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops don't support add_signal_handler.
            pass


async def run(settings: Settings, *, once: bool) -> None:
    async with httpx.AsyncClient(timeout=30.0) as client:
        watcher = build_watcher(settings, client)
        if once:
            await watcher.check_once()
            return

        stop = asyncio.Event()
        _install_signal_handlers(stop)
        await watcher.run_forever(stop, settings.check_interval_seconds)


def main() -> int:
    parser = argparse.ArgumentParser(description="SiteWatch: appointment availability watcher")
    parser.add_argument("--once", action="store_true", help="Run single check and exit")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args()

    try:
        settings = load_settings(dotenv_path=args.env_file)
    except ConfigError as e:
        _setup_logging("INFO")
        logging.getLogger(__name__).error("Invalid configuration: %s", e)
        return 2

    _setup_logging((args.log_level or settings.log_level).upper())
    logger = logging.getLogger(__name__)
    logger.info(
        "Searching areas=%s filter=%s interval=%ss",
        ",".join(sorted(a.cli_name for a in settings.areas)) or "all",
        settings.site_filter or "-",
        settings.check_interval_seconds,
    )

    try:
        asyncio.run(run(settings, once=args.once))
    except SiteWatchError as e:
        logger.error("Check failed (%s: %s)", type(e).__name__, e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
