from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .negotiation import ANY_PHASE, CallPhase, CallState, MediaCommand, StartCall

if TYPE_CHECKING:
    from .negotiation import NegotiationStateMachine

logger = logging.getLogger(__name__)


class MediaControls:
    """Mute, hang-up and screen-share operations for one call.

    Each operation runs on the state machine's event consumer, so it never
    interleaves with an offer or answer being applied.
    """

    def __init__(
        self,
        machine: "NegotiationStateMachine",
        *,
        renegotiate_on_share: bool = True,
        reoffer_when_connected: bool = True,
    ) -> None:
        self._machine = machine
        self._renegotiate_on_share = renegotiate_on_share
        self._reoffer_when_connected = reoffer_when_connected

    async def toggle_mute(self) -> CallState:
        return await self._machine.submit(MediaCommand("toggle_mute", self._toggle_mute))

    async def hang_up(self) -> CallState:
        return await self._machine.hang_up()

    async def start_screen_share(self) -> CallState:
        return await self._machine.submit(MediaCommand("start_screen_share", self._start_screen_share))

    async def stop_screen_share(self) -> CallState:
        return await self._machine.submit(
            MediaCommand("stop_screen_share", self._stop_screen_share, ANY_PHASE - {CallPhase.IDLE})
        )

    async def _toggle_mute(self) -> None:
        session = self._machine.session
        for track in session.outgoing_audio_tracks():
            if not hasattr(track, "enabled"):
                logger.debug("Audio track %s cannot be muted", getattr(track, "id", track))
                continue
            track.enabled = not track.enabled
        session.muted = not session.muted
        logger.info("Microphone %s", "muted" if session.muted else "unmuted")

    async def _start_screen_share(self) -> None:
        session = self._machine.session
        if session.sharing:
            logger.debug("Screen share already active")
            return
        pc = session.peer_connection
        if pc is None:
            raise RuntimeError("no peer connection")
        tracks = await self._machine.devices.get_display_media()
        for track in tracks:
            if track.kind == "audio" and hasattr(track, "enabled"):
                track.enabled = not session.muted
            pc.addTrack(track)
        session.local_media.screen_tracks.extend(tracks)
        session.sharing = True
        session.error = None
        session.surface.show(tracks, "screen")
        logger.info("Screen share started with %d track(s)", len(tracks))
        if not self._renegotiate_on_share or pc.remoteDescription is None:
            return
        if not self._reoffer_when_connected and getattr(pc, "connectionState", None) == "connected":
            logger.info("Call is connected; screen share reaches the peer on the next start_call")
            return
        self._machine.post(StartCall())

    async def _stop_screen_share(self) -> None:
        session = self._machine.session
        pc = session.peer_connection
        if pc is not None:
            for sender in pc.getSenders():
                track = sender.track
                if track is None or track.kind != "video":
                    continue
                track.stop()
                sender.replaceTrack(None)
        for track in session.local_media.screen_tracks:
            if track.kind == "video":
                track.stop()
        session.local_media.screen_tracks = [
            track for track in session.local_media.screen_tracks if track.kind != "video"
        ]
        session.sharing = False
        if session.remote_tracks:
            session.surface.show(session.remote_tracks, "remote")
        else:
            session.surface.clear()
        logger.info("Screen share stopped")
