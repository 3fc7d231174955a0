from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional

from shared.protocol import SignalingAction, decode_signaling_stream, encode_signaling_message

logger = logging.getLogger(__name__)

MessageCallback = Callable[[SignalingAction, Any], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]
ConnectCallback = Callable[[], Awaitable[None] | None]


class SignalingChannel:
    """Persistent TCP channel between one caller and the signaling relay.

    Outbound messages are queued and written by a single send loop, so they
    reach the relay in the order ``send`` was called. Inbound messages are
    dispatched one at a time in arrival order. A failed write or a closed
    socket is reported through ``on_disconnect``; the channel never reconnects
    on its own.
    """

    def __init__(
        self,
        host: str,
        port: int,
        on_message: MessageCallback,
        *,
        on_connect: Optional[ConnectCallback] = None,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._on_message = on_message
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self._send_queue: Deque[bytes] = deque()
        self._send_event = asyncio.Event()
        self._connected = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._stop = False
        self._disconnect_notified = False

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set() and not self._stop

    async def connect(self) -> None:
        logger.info("Connecting to relay %s:%s", self._host, self._port)
        self._reader, self._writer = await asyncio.open_connection(self._host, self._port)
        self._stop = False
        self._disconnect_notified = False
        self._buffer = bytearray()
        self._tasks = [
            asyncio.create_task(self._send_loop()),
            asyncio.create_task(self._recv_loop()),
        ]
        self._connected.set()
        logger.info("Connected to relay %s:%s", self._host, self._port)
        await self._notify(self._on_connect)

    async def close(self) -> None:
        self._stop = True
        self._connected.clear()
        self._send_event.set()
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except Exception:
                pass
        self._reader = None
        self._writer = None
        self._send_queue.clear()
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks = []

    async def send(self, action: SignalingAction, payload: Any) -> None:
        if not self.is_connected:
            raise ConnectionError("Signaling channel is not connected")
        self._send_queue.append(encode_signaling_message(action, payload))
        self._send_event.set()

    async def _send_raw(self, data: bytes) -> None:
        if not self._writer:
            raise ConnectionError("Signaling channel is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def _send_loop(self) -> None:
        while not self._stop:
            await self._send_event.wait()
            self._send_event.clear()
            while self._send_queue and not self._stop:
                data = self._send_queue.popleft()
                try:
                    await self._send_raw(data)
                except Exception:
                    logger.exception("Failed to send signaling message")
                    await self._shutdown("send_error")
                    return

    async def _recv_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(4096)
                if not chunk:
                    logger.info("Relay closed signaling connection")
                    disconnect_reason = "relay_closed"
                    break
                self._buffer.extend(chunk)
                messages, remaining = decode_signaling_stream(bytes(self._buffer))
                self._buffer = bytearray(remaining)
                for message in messages:
                    try:
                        action = SignalingAction(message["action"])
                    except ValueError:
                        logger.debug("Ignoring unknown signaling action %r", message["action"])
                        continue
                    await self._dispatch(action, message["data"])
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error while receiving from relay")
            disconnect_reason = "recv_error"
        if not self._stop:
            await self._shutdown(disconnect_reason or "connection_closed")

    async def _shutdown(self, reason: str) -> None:
        await self.close()
        if self._disconnect_notified:
            return
        self._disconnect_notified = True
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    async def _dispatch(self, action: SignalingAction, payload: Any) -> None:
        try:
            result = self._on_message(action, payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling signaling message %s", action.value)

    async def _notify(self, callback: Optional[ConnectCallback]) -> None:
        if callback is None:
            return
        try:
            result = callback()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Connect callback failed")
