from __future__ import annotations

import argparse
import asyncio
import logging
from typing import List, Optional

from shared.protocol import DEFAULT_RELAY_PORT, DEFAULT_UI_PORT

from .app import CallerApp
from .media_devices import SCREEN_FPS, MediaDevices


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Two-party call client")
    parser.add_argument("server_host", help="Hostname or IP of the signaling relay")
    parser.add_argument("--port", type=int, default=DEFAULT_RELAY_PORT, help="Relay TCP port")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local UI web server")
    parser.add_argument("--ui-port", type=int, default=DEFAULT_UI_PORT, help="Port for the local UI web server")
    parser.add_argument(
        "--ice-server",
        action="append",
        dest="ice_servers",
        metavar="URL",
        help="STUN/TURN url for the peer connection (repeatable; default uses aiortc's public STUN server)",
    )
    parser.add_argument("--no-ice-servers", action="store_true", help="Use host candidates only (LAN calls)")
    parser.add_argument("--audio-device", help="sounddevice input device name or index")
    parser.add_argument("--screen-source", help="Input passed to the screen grabber (e.g. :0.0 for x11grab)")
    parser.add_argument("--screen-format", help="FFmpeg input format for screen capture (x11grab, avfoundation, gdigrab)")
    parser.add_argument("--screen-fps", type=int, default=SCREEN_FPS, help="Screen capture frame rate (max 60)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    audio_device: Optional[object] = args.audio_device
    if isinstance(audio_device, str) and audio_device.isdigit():
        audio_device = int(audio_device)
    devices = MediaDevices(
        audio_device=audio_device,
        screen_source=args.screen_source,
        screen_format=args.screen_format,
        screen_fps=args.screen_fps,
    )
    ice_servers = [] if args.no_ice_servers else args.ice_servers
    app = CallerApp(args.server_host, args.port, devices=devices, ice_servers=ice_servers)

    asyncio.run(app.run(host=args.ui_host, port=args.ui_port))


if __name__ == "__main__":
    main()
