from __future__ import annotations

import argparse
import asyncio
import logging
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config.settings import Settings, load_settings
from .origin.errors import OriginConnectionError
from .origin.session import OriginSession
from .origin.state import StateStore, default_state_store
from .server import run_server

logger = logging.getLogger(__name__)

START_LOG_NAME = "origin-alpaca-start.log"


def _attach_start_logfile(settings: Settings) -> Optional[Path]:
    """Mirror root logging into ``<state_directory>/logs`` for ``origin-alpaca start``.

    Returns the log path, or None when the directory cannot be created.
    Calling it again for the same path does not add a second handler.
    """

    log_path = Path(settings.state_directory) / "logs" / START_LOG_NAME
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("cli.start.logfile_unavailable path=%s error=%s", log_path, exc)
        return None

    root = logging.getLogger()
    resolved = str(log_path.resolve())
    if any(isinstance(h, RotatingFileHandler) and h.baseFilename == resolved for h in root.handlers):
        return log_path

    handler = RotatingFileHandler(resolved, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
    logger.info("cli.start.logfile path=%s", log_path)
    return log_path


def _apply_address_overrides(
    settings: Settings,
    origin_host: Optional[str],
    origin_port: Optional[int],
) -> None:
    if origin_host:
        settings.origin_host = origin_host
    if origin_port:
        settings.origin_port = origin_port


async def _preflight_session(
    session: OriginSession,
    settings: Settings,
    state_store: StateStore,
    *,
    timeout: float = 120.0,
    interval: float = 5.0,
) -> None:
    """Ensure the Origin answers on its control endpoint before serving."""

    deadline = time.monotonic() + max(timeout, 0.0)
    attempt = 1

    while True:
        try:
            await asyncio.to_thread(session.acquire, "telescope")
        except OriginConnectionError as exc:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error(
                    "cli.start.connection_failed host=%s port=%s attempt=%s error=%s",
                    settings.origin_host,
                    settings.origin_port,
                    attempt,
                    exc.reason,
                )
                state_store.record_error(str(exc))
                raise
            logger.warning(
                "cli.start.connection_retry host=%s port=%s attempt=%s error=%s",
                settings.origin_host,
                settings.origin_port,
                attempt,
                exc.reason,
            )
            await asyncio.sleep(min(max(interval, 0.01), max(remaining, 0.01)))
            attempt += 1
            continue

        try:
            logger.info(
                "cli.start.connected host=%s port=%s attempt=%s",
                session.host,
                session.port,
                attempt,
            )
            state_store.record_connection(session.host, session.port, timestamp=time.time())
        finally:
            await asyncio.to_thread(session.release, "telescope")
        return


async def start_command(
    *,
    settings: Settings,
    origin_host: Optional[str],
    origin_port: Optional[int],
    timeout: float,
    interval: float,
) -> None:
    """Verify the Origin is reachable, remember its address and launch the Alpaca server."""

    _attach_start_logfile(settings)

    state_store = default_state_store(settings.state_directory)
    record = state_store.load()
    if origin_host:
        _apply_address_overrides(settings, origin_host, origin_port)
        logger.info("cli.start.using_cli_host host=%s port=%s", settings.origin_host, settings.origin_port)
    elif record.last_host:
        settings.origin_host = record.last_host
        if record.last_port:
            settings.origin_port = record.last_port
        if origin_port:
            settings.origin_port = origin_port
        logger.info("cli.start.using_stored_host host=%s port=%s", settings.origin_host, settings.origin_port)
    else:
        _apply_address_overrides(settings, None, origin_port)
        logger.info("cli.start.using_config_host host=%s port=%s", settings.origin_host, settings.origin_port)

    session = OriginSession(settings)
    await _preflight_session(
        session,
        settings,
        state_store,
        timeout=timeout,
        interval=interval,
    )

    await run_server(settings, session)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="origin-alpaca",
        description="ASCOM Alpaca server for the Celestron Origin",
    )
    subparsers = parser.add_subparsers(dest="command")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="YAML settings file layered over ORIGIN_ALPACA_* variables.")
    common.add_argument("--origin-host", help="Origin address; overrides settings and the stored address.")
    common.add_argument("--origin-port", type=int, help="Origin control port (default 80).")

    subparsers.add_parser("serve", parents=[common], help="Serve the Alpaca API (default).")
    start = subparsers.add_parser(
        "start",
        parents=[common],
        help="Wait until the Origin answers, remember its address, then serve.",
    )
    start.add_argument(
        "--wait-timeout",
        type=float,
        default=180.0,
        help="Give up after this many seconds without a connection (default 180).",
    )
    start.add_argument(
        "--wait-interval",
        type=float,
        default=5.0,
        help="Seconds between connection attempts (default 5).",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Console entry point."""
    logging.basicConfig(level=logging.INFO)
    args = build_parser().parse_args(argv)
    settings = load_settings(config_path=getattr(args, "config", None))

    if args.command == "start":
        coroutine = start_command(
            settings=settings,
            origin_host=args.origin_host,
            origin_port=args.origin_port,
            timeout=args.wait_timeout,
            interval=args.wait_interval,
        )
    else:
        _apply_address_overrides(settings, getattr(args, "origin_host", None), getattr(args, "origin_port", None))
        coroutine = run_server(settings)
    asyncio.run(coroutine)


if __name__ == "__main__":
    main()
