from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from shared.protocol import DEFAULT_RELAY_PORT, DEFAULT_STATUS_PORT

from relay.relay_server import RelayServer
from relay.session_manager import SessionManager
from relay.status_api import StatusServer

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Two-party call signaling relay")
    parser.add_argument("--host", default="0.0.0.0", help="Host/IP to bind the relay")
    parser.add_argument("--port", type=int, default=DEFAULT_RELAY_PORT, help="TCP signaling port")
    parser.add_argument("--status-host", default="127.0.0.1", help="Host for the status API")
    parser.add_argument("--status-port", type=int, default=DEFAULT_STATUS_PORT, help="Port for the status API")
    parser.add_argument("--no-status", action="store_true", help="Do not start the status API")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    return parser.parse_args(argv)


def _configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )


async def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)
    _configure_logging(args)

    session_manager = SessionManager()
    relay_server = RelayServer(args.host, args.port, session_manager)
    status_server: Optional[StatusServer] = None
    if not args.no_status:
        status_server = StatusServer(session_manager, host=args.status_host, port=args.status_port)

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if stop_event.is_set():
            logger.debug("Shutdown already in progress")
            return
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await relay_server.start()
    if status_server is not None:
        await status_server.start()

    await stop_event.wait()

    logger.info("Stopping relay")

    try:
        disconnected = await relay_server.stop()
        logger.info("Closed %d channel(s)", disconnected)
    except Exception:
        logger.exception("Error stopping relay server")

    if status_server is not None:
        try:
            await status_server.stop()
        except Exception:
            logger.exception("Error stopping status server")

    logger.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
