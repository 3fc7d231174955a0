from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Dict, Optional, Set, Tuple

from shared.protocol import frame

logger = logging.getLogger(__name__)

EVENT_LOG_LIMIT = 1000


@dataclass(slots=True)
class ConnectedChannel:
    channel_id: str
    writer: asyncio.StreamWriter
    connected_at: float = field(default_factory=lambda: time.time())
    peer_ip: Optional[str] = None
    peer_port: Optional[int] = None
    bytes_sent: int = 0
    bytes_received: int = 0
    frames_received: int = 0
    frames_forwarded: int = 0
    drain_task: Optional["asyncio.Task[None]"] = None

    def send_frame(self, body: bytes) -> None:
        payload = frame(body)
        self.bytes_sent += len(payload)
        self.frames_forwarded += 1
        self.writer.write(payload)
        if self.drain_task is None or self.drain_task.done():
            self.drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            await self.writer.drain()
        except Exception as exc:
            logger.debug("Drain failed for %s: %s", self.channel_id, exc)

    def cancel_drain(self) -> None:
        if self.drain_task is not None and not self.drain_task.done():
            self.drain_task.cancel()
        self.drain_task = None


class SessionManager:
    """Tracks every connected channel and fans frames out to the others.

    The session is simply the set of channels currently connected; there are
    no rooms and no pairing. All mutation and iteration of the registry happens
    under one lock so a broadcast never writes to a channel that is being torn
    down.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, ConnectedChannel] = {}
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._event_log: list[dict] = []
        self._session_started_at: float = time.time()
        self._total_connections = 0
        self._total_frames = 0

    async def register(self, writer: asyncio.StreamWriter, peername: Optional[Tuple[str, ...]] = None) -> ConnectedChannel:
        async with self._lock:
            channel = ConnectedChannel(channel_id=f"channel-{next(self._ids)}", writer=writer)
            if peername:
                channel.peer_ip = str(peername[0])
                if len(peername) > 1:
                    try:
                        channel.peer_port = int(peername[1])
                    except (TypeError, ValueError):
                        channel.peer_port = None
            if not self._channels:
                self._session_started_at = time.time()
            self._channels[channel.channel_id] = channel
            self._total_connections += 1
            self._record_event(
                "channel_connected",
                {
                    "channel_id": channel.channel_id,
                    "peer_ip": channel.peer_ip,
                },
            )
            logger.info("Registered %s (%d connected)", channel.channel_id, len(self._channels))
            return channel

    async def unregister(self, channel_id: str, *, event_type: str = "channel_disconnected") -> bool:
        async with self._lock:
            channel = self._channels.pop(channel_id, None)
            if channel is None:
                return False
            channel.cancel_drain()
            try:
                channel.writer.close()
            except Exception:  # pragma: no cover - cleanup best effort
                logger.exception("Error while closing writer for %s", channel_id)
            self._record_event(
                event_type,
                {
                    "channel_id": channel_id,
                    "frames_received": channel.frames_received,
                },
            )
            logger.info("Unregistered %s (%d connected)", channel_id, len(self._channels))
            return True

    async def broadcast(self, body: bytes, *, exclude: Optional[Set[str]] = None) -> int:
        """Queue one frame body on every channel not in ``exclude``.

        Returns the number of channels the frame was written to. Each channel
        drains in its own task, so a slow or broken recipient never delays the
        others or the sender's next frame.
        """

        if exclude is None:
            exclude = set()
        delivered = 0
        async with self._lock:
            for channel_id, channel in self._channels.items():
                if channel_id in exclude:
                    continue
                if channel.writer.is_closing():
                    logger.debug("Skipping %s; writer is closing", channel_id)
                    continue
                try:
                    channel.send_frame(body)
                    delivered += 1
                except Exception:
                    logger.exception("Failed to queue frame to %s", channel_id)
            self._total_frames += 1
        return delivered

    async def record_received(self, channel_id: str, num_bytes: int, *, frames: int = 0) -> None:
        if num_bytes <= 0 and frames <= 0:
            return
        async with self._lock:
            channel = self._channels.get(channel_id)
            if channel:
                channel.bytes_received += max(0, num_bytes)
                channel.frames_received += frames

    async def list_channels(self) -> list[str]:
        async with self._lock:
            return list(self._channels.keys())

    async def channel_count(self) -> int:
        async with self._lock:
            return len(self._channels)

    async def snapshot(self) -> dict:
        async with self._lock:
            channels: list[dict[str, object]] = []
            for channel in self._channels.values():
                channels.append(
                    {
                        "channel_id": channel.channel_id,
                        "connected_at": channel.connected_at,
                        "peer_ip": channel.peer_ip,
                        "peer_port": channel.peer_port,
                        "bytes_sent": channel.bytes_sent,
                        "bytes_received": channel.bytes_received,
                        "frames_received": channel.frames_received,
                        "frames_forwarded": channel.frames_forwarded,
                        "throughput_bps": _calculate_rate(channel.bytes_received, channel.connected_at),
                    }
                )
            return {
                "channels": channels,
                "channel_ids": [channel["channel_id"] for channel in channels],
                "channel_count": len(channels),
                "total_connections": self._total_connections,
                "total_frames": self._total_frames,
                "session_started_at": self._session_started_at,
                "events": list(self._event_log[-300:]),
            }

    async def get_recent_events(self, limit: int = 300) -> list[dict[str, object]]:
        async with self._lock:
            if limit <= 0:
                return []
            return list(self._event_log[-limit:])

    async def disconnect_all(self) -> int:
        """Close every channel; used during shutdown."""

        waiters: list[Awaitable[None]] = []
        async with self._lock:
            if not self._channels:
                return 0
            channels = list(self._channels.values())
            for channel in channels:
                channel.cancel_drain()
                try:
                    channel.writer.close()
                    waiters.append(channel.writer.wait_closed())
                except Exception:
                    logger.exception("Error while closing writer for %s during shutdown", channel.channel_id)
            disconnected = len(channels)
            self._channels.clear()
            self._record_event(
                "relay_shutdown",
                {
                    "disconnected": disconnected,
                },
            )
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)
        return disconnected

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        event = {
            "type": event_type,
            "timestamp": time.time(),
            "details": details,
        }
        self._event_log.append(event)
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log.pop(0)


def _calculate_rate(total_bytes: int, connected_at: float) -> float:
    elapsed = max(0.001, time.time() - connected_at)
    return (total_bytes * 8) / elapsed
