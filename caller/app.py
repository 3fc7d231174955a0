from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from shared.protocol import DEFAULT_RELAY_PORT, DEFAULT_UI_PORT

from .media_controls import MediaControls
from .media_devices import MediaAcquisitionError, MediaDevices
from .negotiation import CallState, NegotiationStateMachine, PeerConnectionFactory, peer_connection_factory
from .presentation import PresentationSurface
from .signaling_channel import SignalingChannel

logger = logging.getLogger(__name__)

RECONNECT_BASE_DELAY_SECONDS = 2.0
RECONNECT_MAX_DELAY_SECONDS = 30.0


class WebSocketHub:
    """Tracks active UI WebSocket connections."""

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._connections:
                self._connections.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            for ws in list(self._connections):
                try:
                    if ws.application_state == WebSocketState.CONNECTED:
                        await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to send WebSocket message")


class CallerApp:
    """Caller runtime: relay channel, negotiation, and the local UI binding."""

    def __init__(
        self,
        server_host: str,
        port: int = DEFAULT_RELAY_PORT,
        *,
        devices: Optional[MediaDevices] = None,
        surface: Optional[PresentationSurface] = None,
        pc_factory: Optional[PeerConnectionFactory] = None,
        ice_servers: Optional[List[str]] = None,
        channel: Optional[SignalingChannel] = None,
    ) -> None:
        self._server_host = server_host
        self._port = port
        self._ws_hub = WebSocketHub()
        self._devices = devices or MediaDevices()
        self._surface = surface or PresentationSurface(on_frame=self._broadcast_frame)
        self._channel = channel or SignalingChannel(
            server_host,
            port,
            self._on_signaling_message,
            on_connect=self._on_channel_connect,
            on_disconnect=self._on_channel_disconnect,
        )
        self.machine = NegotiationStateMachine(
            self._channel,
            self._devices,
            self._surface,
            peer_connection_factory=pc_factory or peer_connection_factory(ice_servers),
        )
        self.controls = MediaControls(self.machine)
        self.machine.add_listener(self._broadcast_state)
        self._channel_status = "disconnected"
        self._should_reconnect = False
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempt = 0
        self._uvicorn_server = None
        self._app = FastAPI()
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def channel_status(self) -> str:
        return self._channel_status

    def _configure_routes(self) -> None:
        @self._app.get("/api/state")
        async def state() -> Dict[str, object]:
            return self._build_snapshot()

        @self._app.websocket("/ws/control")
        async def ws_control(websocket: WebSocket) -> None:
            await self._ws_hub.connect(websocket)
            try:
                await websocket.send_json({"type": "channel_status", "payload": {"state": self._channel_status}})
                await websocket.send_json({"type": "call_state", "payload": self.machine.state.to_dict()})
                while True:
                    data = await websocket.receive_json()
                    await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._ws_hub.disconnect(websocket)

    def _build_snapshot(self) -> Dict[str, object]:
        return {
            "call": self.machine.state.to_dict(),
            "channel": {
                "state": self._channel_status,
                "relay": f"{self._server_host}:{self._port}",
                "reconnect_attempt": self._reconnect_attempt,
            },
            "presentation": self._surface.source,
        }

    async def start(self) -> None:
        """Start the machine, open the relay channel and acquire local media."""

        await self.machine.start()
        self._should_reconnect = True
        await self._connect_channel()
        await self._acquire_media()

    async def stop(self) -> None:
        self._should_reconnect = False
        self._cancel_reconnect()
        await self.machine.stop()
        await self._channel.close()
        self._channel_status = "disconnected"

    async def _acquire_media(self) -> CallState:
        try:
            return await self.machine.acquire_media()
        except MediaAcquisitionError as exc:
            await self._ws_hub.broadcast({"type": "media_error", "payload": {"message": str(exc)}})
            return self.machine.state

    async def _connect_channel(self) -> None:
        await self._broadcast_channel_status("connecting")
        try:
            await self._channel.connect()
        except Exception as exc:
            logger.warning("Unable to reach relay %s:%s: %s", self._server_host, self._port, exc)
            await self._broadcast_channel_status("error", message=str(exc))
            self._schedule_reconnect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is None:
            return
        task = self._reconnect_task
        self._reconnect_task = None
        task.cancel()

    def _schedule_reconnect(self) -> None:
        if not self._should_reconnect:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        delay = min(
            RECONNECT_BASE_DELAY_SECONDS * (2 ** self._reconnect_attempt),
            RECONNECT_MAX_DELAY_SECONDS,
        )
        self._reconnect_attempt += 1

        async def _worker(delay_seconds: float) -> None:
            try:
                await asyncio.sleep(delay_seconds)
                if not self._should_reconnect:
                    return
                self._reconnect_task = None
                await self._connect_channel()
            except asyncio.CancelledError:
                raise
            finally:
                if self._reconnect_task is asyncio.current_task():
                    self._reconnect_task = None

        logger.info("Reconnecting to relay in %.1fs", delay)
        self._reconnect_task = asyncio.create_task(_worker(delay))

    async def _on_channel_connect(self) -> None:
        self._reconnect_attempt = 0
        await self._broadcast_channel_status("connected")

    async def _on_channel_disconnect(self, reason: Optional[str]) -> None:
        logger.warning("Relay channel lost: %s", reason or "unknown")
        await self._broadcast_channel_status("reconnecting" if self._should_reconnect else "disconnected", message=reason)
        self._schedule_reconnect()

    def _on_signaling_message(self, action, payload: Any) -> None:
        self.machine.deliver(action, payload)

    async def _broadcast_channel_status(self, state: str, **payload: object) -> None:
        self._channel_status = state
        await self._ws_hub.broadcast({"type": "channel_status", "payload": {"state": state, **payload}})

    async def _broadcast_state(self, state: CallState) -> None:
        await self._ws_hub.broadcast({"type": "call_state", "payload": state.to_dict()})

    async def _broadcast_frame(self, jpeg: bytes, source: str) -> None:
        await self._ws_hub.broadcast(
            {
                "type": "remote_frame",
                "payload": {
                    "source": source,
                    "frame": base64.b64encode(jpeg).decode("ascii"),
                },
            }
        )

    async def _handle_ui_message(self, data: Dict[str, object]) -> None:
        """Handle intents coming from the web UI via WebSocket."""

        kind = data.get("type") if isinstance(data, dict) else None
        try:
            if kind == "start_call":
                await self.machine.start_call()
            elif kind == "toggle_mute":
                await self.controls.toggle_mute()
            elif kind == "hang_up":
                await self.controls.hang_up()
            elif kind == "start_screen_share":
                await self.controls.start_screen_share()
            elif kind == "stop_screen_share":
                await self.controls.stop_screen_share()
            elif kind == "rejoin":
                await self._acquire_media()
            else:
                logger.debug("Ignoring UI message %r", kind)
        except MediaAcquisitionError as exc:
            await self._ws_hub.broadcast({"type": "media_error", "payload": {"message": str(exc)}})

    async def run(self, host: str = "127.0.0.1", port: int = DEFAULT_UI_PORT) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        await self.start()
        logger.info("Caller UI available at http://%s:%s", host if host != "0.0.0.0" else "127.0.0.1", port)
        try:
            await server.serve()
        finally:
            self._uvicorn_server = None
            await self.stop()
