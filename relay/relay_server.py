from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

from shared.protocol import FrameTooLargeError, split_frames

from .session_manager import ConnectedChannel, SessionManager

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class RelayServer:
    """Accepts signaling channels and forwards every frame to the other channels.

    The relay never parses what it forwards. It has no notion of who is talking
    to whom, so it is only correct while at most two channels are connected;
    with more, every participant sees every other participant's messages.
    """

    def __init__(self, host: str, port: int, session_manager: SessionManager) -> None:
        self._host = host
        self._port = port
        self._session_manager = session_manager
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def sockets(self) -> list:
        if self._server is None:
            return []
        return list(self._server.sockets or [])

    @property
    def port(self) -> int:
        for sock in self.sockets:
            return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_channel, self._host, self._port)
        sockets = ", ".join(str(sock.getsockname()) for sock in self.sockets)
        logger.info("Signaling relay listening on %s", sockets)

    async def stop(self) -> int:
        """Stop accepting channels and close the connected ones.

        Returns the number of channels that were still connected.
        """

        if self._server is None:
            return 0
        self._server.close()
        # wait_closed() also waits for open connections on newer interpreters
        disconnected = await self._session_manager.disconnect_all()
        await self._server.wait_closed()
        self._server = None
        return disconnected

    async def on_connect(self, writer: asyncio.StreamWriter, peername: Optional[Tuple[str, ...]] = None) -> ConnectedChannel:
        channel = await self._session_manager.register(writer, peername=peername)
        count = await self._session_manager.channel_count()
        logger.info("Channel %s connected from %s (%d connected)", channel.channel_id, peername, count)
        if count > 2:
            logger.warning("%d channels connected; every message is broadcast to all of them", count)
        return channel

    async def on_message(self, channel_id: str, body: bytes) -> int:
        """Forward one frame body to every channel except its sender."""

        delivered = await self._session_manager.broadcast(body, exclude={channel_id})
        logger.debug("Relayed %d-byte frame from %s to %d channel(s)", len(body), channel_id, delivered)
        return delivered

    async def on_disconnect(self, channel_id: str) -> None:
        removed = await self._session_manager.unregister(channel_id)
        if removed:
            count = await self._session_manager.channel_count()
            logger.info("Channel %s disconnected (%d connected)", channel_id, count)

    async def _handle_channel(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        channel = await self.on_connect(writer, peername=peer)
        channel_id = channel.channel_id

        buffer = b""
        try:
            while True:
                data = await reader.read(READ_CHUNK_SIZE)
                if not data:
                    break
                buffer += data
                bodies, buffer = split_frames(buffer)
                await self._session_manager.record_received(channel_id, len(data), frames=len(bodies))
                for body in bodies:
                    await self.on_message(channel_id, body)
        except FrameTooLargeError as exc:
            logger.warning("Dropping %s: %s", channel_id, exc)
        except ConnectionError as exc:
            logger.info("Channel %s connection lost: %s", channel_id, exc)
        except Exception as exc:
            logger.exception("Error while handling channel %s: %s", channel_id, exc)
        finally:
            await self.on_disconnect(channel_id)
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
