"""Negotiation state machine driving one peer connection.

Every input, whether a user intent, a message from the relay, or an event
raised by the peer connection, is queued and handled by a single consumer
task, one event at a time. Handlers never run concurrently, and an event that
is not valid in the current phase is dropped.

Phases::

    IDLE -> MEDIA_ACQUIRED -> OFFERING -> ANSWERING -> CONNECTED -> CLOSED

``CLOSED`` is reached from anywhere by hanging up. Failures while applying
descriptions or candidates are logged and leave the phase untouched, so a later
offer can still succeed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple, Type

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection

from shared.protocol import SignalingAction

from .descriptions import (
    candidates_in_sdp,
    description_to_payload,
    payload_to_candidate,
    payload_to_description,
)
from .media_devices import LocalMedia, MediaAcquisitionError, MediaDevices

if TYPE_CHECKING:
    from aiortc import MediaStreamTrack

    from .presentation import PresentationSurface
    from .signaling_channel import SignalingChannel

logger = logging.getLogger(__name__)

StateListener = Callable[["CallState"], Awaitable[None] | None]
PeerConnectionFactory = Callable[[], RTCPeerConnection]


class CallPhase(str, Enum):
    IDLE = "idle"
    MEDIA_ACQUIRED = "media_acquired"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    CLOSED = "closed"


ANY_PHASE: FrozenSet[CallPhase] = frozenset(CallPhase)
OPEN_PHASES: FrozenSet[CallPhase] = frozenset(
    {CallPhase.MEDIA_ACQUIRED, CallPhase.OFFERING, CallPhase.ANSWERING, CallPhase.CONNECTED}
)


@dataclass(frozen=True, slots=True)
class CallState:
    """What the UI renders."""

    phase: CallPhase
    muted: bool = False
    sharing: bool = False
    remote_attached: bool = False
    error: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.phase == CallPhase.CONNECTED

    @property
    def controls_enabled(self) -> bool:
        return self.phase in OPEN_PHASES

    def to_dict(self) -> Dict[str, object]:
        return {
            "phase": self.phase.value,
            "connected": self.connected,
            "controls_enabled": self.controls_enabled,
            "muted": self.muted,
            "sharing": self.sharing,
            "remote_attached": self.remote_attached,
            "error": self.error,
        }


@dataclass
class CallSession:
    """Everything one call owns; handed to the media controls and the UI."""

    channel: "SignalingChannel"
    surface: "PresentationSurface"
    local_media: LocalMedia = field(default_factory=LocalMedia)
    peer_connection: Optional[RTCPeerConnection] = None
    remote_tracks: List["MediaStreamTrack"] = field(default_factory=list)
    pending_candidates: List[RTCIceCandidate] = field(default_factory=list)
    muted: bool = False
    sharing: bool = False
    error: Optional[str] = None

    @property
    def remote_attached(self) -> bool:
        return bool(self.remote_tracks)

    def outgoing_audio_tracks(self) -> List["MediaStreamTrack"]:
        if self.peer_connection is None:
            return self.local_media.audio_tracks()
        return [
            sender.track
            for sender in self.peer_connection.getSenders()
            if sender.track is not None and sender.track.kind == "audio"
        ]


# Events

@dataclass(slots=True)
class AcquireMedia:
    pass


@dataclass(slots=True)
class StartCall:
    pass


@dataclass(slots=True)
class RemoteOffer:
    payload: Any


@dataclass(slots=True)
class RemoteAnswer:
    payload: Any


@dataclass(slots=True)
class RemoteCandidate:
    payload: Any


@dataclass(slots=True)
class LocalCandidate:
    payload: Dict[str, Any]
    source: Any = None


@dataclass(slots=True)
class RemoteTrack:
    track: Any
    source: Any = None


@dataclass(slots=True)
class HangUp:
    pass


@dataclass(slots=True)
class MediaCommand:
    """A media control operation run on the event consumer."""

    name: str
    apply: Callable[[], Awaitable[None]]
    phases: FrozenSet[CallPhase] = OPEN_PHASES


_TRANSITIONS: Dict[Type[Any], Tuple[FrozenSet[CallPhase], str]] = {
    AcquireMedia: (frozenset({CallPhase.IDLE, CallPhase.CLOSED}), "_acquire_media"),
    StartCall: (OPEN_PHASES, "_start_call"),
    RemoteOffer: (OPEN_PHASES, "_accept_offer"),
    RemoteAnswer: (frozenset({CallPhase.OFFERING, CallPhase.CONNECTED}), "_accept_answer"),
    RemoteCandidate: (OPEN_PHASES, "_add_remote_candidate"),
    LocalCandidate: (OPEN_PHASES, "_send_local_candidate"),
    RemoteTrack: (OPEN_PHASES, "_attach_remote_track"),
    HangUp: (ANY_PHASE, "_hang_up"),
}

_INBOUND_EVENTS: Dict[SignalingAction, Type[Any]] = {
    SignalingAction.OFFER: RemoteOffer,
    SignalingAction.ANSWER: RemoteAnswer,
    SignalingAction.ICE_CANDIDATE: RemoteCandidate,
}


def peer_connection_factory(ice_servers: Optional[List[str]] = None) -> PeerConnectionFactory:
    """Build RTCPeerConnections, optionally with explicit STUN/TURN urls."""

    def create() -> RTCPeerConnection:
        if ice_servers is None:
            return RTCPeerConnection()
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        return RTCPeerConnection(configuration)

    return create


class NegotiationStateMachine:
    """Drives one peer connection through offer, answer and candidate exchange."""

    def __init__(
        self,
        channel: "SignalingChannel",
        devices: MediaDevices,
        surface: "PresentationSurface",
        *,
        peer_connection_factory: PeerConnectionFactory = RTCPeerConnection,
        trickle_candidates: bool = True,
    ) -> None:
        self._session = CallSession(channel=channel, surface=surface)
        self._devices = devices
        self._create_peer_connection = peer_connection_factory
        self._trickle_candidates = trickle_candidates
        self._phase = CallPhase.IDLE
        self._events: asyncio.Queue[Tuple[Any, Optional[asyncio.Future]]] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task[None]] = None
        self._listeners: List[StateListener] = []

    @property
    def phase(self) -> CallPhase:
        return self._phase

    @property
    def session(self) -> CallSession:
        return self._session

    @property
    def devices(self) -> MediaDevices:
        return self._devices

    @property
    def state(self) -> CallState:
        return CallState(
            phase=self._phase,
            muted=self._session.muted,
            sharing=self._session.sharing,
            remote_attached=self._session.remote_attached,
            error=self._session.error,
        )

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            return
        self._consumer = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Hang up if needed and stop consuming events."""

        if self._consumer is None:
            return
        if self._phase != CallPhase.CLOSED and self._session.peer_connection is not None:
            await self.hang_up()
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""

        await self._events.join()

    def post(self, event: Any) -> None:
        """Queue an event without waiting for it to be handled."""

        self._events.put_nowait((event, None))

    async def submit(self, event: Any) -> CallState:
        """Queue an event and wait for the resulting state."""

        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        self._events.put_nowait((event, waiter))
        return await waiter

    def deliver(self, action: SignalingAction, payload: Any) -> None:
        """Channel callback: turn an inbound negotiation message into an event."""

        event_type = _INBOUND_EVENTS.get(action)
        if event_type is None:
            logger.debug("Ignoring signaling action %s", action)
            return
        self.post(event_type(payload))

    async def acquire_media(self) -> CallState:
        return await self.submit(AcquireMedia())

    async def start_call(self) -> CallState:
        return await self.submit(StartCall())

    async def hang_up(self) -> CallState:
        return await self.submit(HangUp())

    async def _run(self) -> None:
        while True:
            event, waiter = await self._events.get()
            try:
                state = await self._process(event)
            except Exception as exc:
                if waiter is not None and not waiter.done():
                    waiter.set_exception(exc)
            else:
                if waiter is not None and not waiter.done():
                    waiter.set_result(state)
            finally:
                self._events.task_done()

    async def _process(self, event: Any) -> CallState:
        if isinstance(event, MediaCommand):
            phases, name = event.phases, event.name
            handler: Callable[[], Awaitable[None]] = event.apply
        else:
            phases, method = _TRANSITIONS[type(event)]
            name = type(event).__name__
            handler = lambda: getattr(self, method)(event)  # noqa: E731

        if self._phase not in phases:
            logger.debug("Ignoring %s in phase %s", name, self._phase.value)
            return self.state

        before = self.state
        try:
            await handler()
        except MediaAcquisitionError as exc:
            self._session.error = str(exc)
            logger.error("Media acquisition failed: %s", exc)
            raise
        except Exception:
            logger.exception("%s failed in phase %s; state unchanged", name, self._phase.value)
        finally:
            after = self.state
            if after != before:
                await self._notify(after)
        return after

    async def _notify(self, state: CallState) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(state)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Call state listener failed")

    def _set_phase(self, phase: CallPhase) -> None:
        if phase != self._phase:
            logger.info("Call phase %s -> %s", self._phase.value, phase.value)
            self._phase = phase

    def _require_peer_connection(self) -> RTCPeerConnection:
        pc = self._session.peer_connection
        if pc is None:
            raise RuntimeError("no peer connection")
        return pc

    def _build_peer_connection(self) -> RTCPeerConnection:
        pc = self._create_peer_connection()
        for track in self._session.local_media.all_tracks():
            pc.addTrack(track)

        def on_track(track: "MediaStreamTrack") -> None:
            self.post(RemoteTrack(track, source=pc))

        def on_connection_state() -> None:
            state = getattr(pc, "connectionState", None)
            logger.info("Peer connection state is %s", state)
            if state == "failed":
                logger.warning("Peer connection failed; a fresh offer is needed to recover")

        pc.on("track", on_track)
        pc.on("connectionstatechange", on_connection_state)
        return pc

    # Handlers. Each runs on the consumer task.

    async def _acquire_media(self, event: AcquireMedia) -> None:
        self._session.error = None
        try:
            media = await self._devices.get_user_media()
        except MediaAcquisitionError:
            self._set_phase(CallPhase.IDLE)
            raise
        self._session.local_media = media
        self._session.remote_tracks = []
        self._session.pending_candidates = []
        self._session.muted = False
        self._session.sharing = False
        self._session.peer_connection = self._build_peer_connection()
        self._set_phase(CallPhase.MEDIA_ACQUIRED)

    async def _start_call(self, event: StartCall) -> None:
        pc = self._require_peer_connection()
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        description = pc.localDescription
        await self._session.channel.send(SignalingAction.OFFER, description_to_payload(description))
        if self._phase != CallPhase.CONNECTED:
            self._set_phase(CallPhase.OFFERING)
        self._announce_local_candidates(pc, description.sdp)

    async def _accept_offer(self, event: RemoteOffer) -> None:
        description = payload_to_description(event.payload)
        if description.type != "offer":
            raise ValueError(f"offer message carried a {description.type!r} description")
        pc = self._require_peer_connection()
        if getattr(pc, "signalingState", "stable") == "have-local-offer":
            # glare: drop our unanswered offer and take theirs
            logger.info("Offer received while offering; accepting the remote offer")
            pc = await self._replace_peer_connection()
        await pc.setRemoteDescription(description)
        await self._flush_pending_candidates(pc)
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        local = pc.localDescription
        await self._session.channel.send(SignalingAction.ANSWER, description_to_payload(local))
        self._set_phase(CallPhase.ANSWERING)
        self._announce_local_candidates(pc, local.sdp)

    async def _accept_answer(self, event: RemoteAnswer) -> None:
        description = payload_to_description(event.payload)
        if description.type != "answer":
            raise ValueError(f"answer message carried a {description.type!r} description")
        pc = self._require_peer_connection()
        await pc.setRemoteDescription(description)
        await self._flush_pending_candidates(pc)
        if self._session.remote_attached:
            self._set_phase(CallPhase.CONNECTED)

    async def _add_remote_candidate(self, event: RemoteCandidate) -> None:
        candidate = payload_to_candidate(event.payload)
        if candidate is None:
            return
        pc = self._require_peer_connection()
        if pc.remoteDescription is None:
            logger.debug("Buffering remote candidate until a remote description is set")
            self._session.pending_candidates.append(candidate)
            return
        await pc.addIceCandidate(candidate)

    async def _send_local_candidate(self, event: LocalCandidate) -> None:
        if event.source is not None and event.source is not self._session.peer_connection:
            return
        await self._session.channel.send(SignalingAction.ICE_CANDIDATE, event.payload)

    async def _attach_remote_track(self, event: RemoteTrack) -> None:
        if event.source is not None and event.source is not self._session.peer_connection:
            logger.debug("Ignoring track from a replaced peer connection")
            return
        logger.info("Remote %s track received", getattr(event.track, "kind", "unknown"))
        self._session.remote_tracks.append(event.track)
        if not self._session.sharing:
            self._session.surface.show(self._session.remote_tracks, "remote")
        self._set_phase(CallPhase.CONNECTED)

    async def _hang_up(self, event: HangUp) -> None:
        pc = self._session.peer_connection
        if pc is None and self._phase == CallPhase.CLOSED:
            logger.debug("Hang up ignored; call already closed")
            return
        self._session.peer_connection = None
        try:
            if pc is not None:
                await pc.close()
        finally:
            self._session.local_media.stop_all()
            self._session.surface.clear()
            self._session.remote_tracks = []
            self._session.pending_candidates = []
            self._session.sharing = False
            self._session.muted = False
            self._set_phase(CallPhase.CLOSED)

    async def _replace_peer_connection(self) -> RTCPeerConnection:
        old = self._require_peer_connection()
        self._session.peer_connection = None
        try:
            await old.close()
        except Exception:
            logger.exception("Error while closing replaced peer connection")
        pc = self._build_peer_connection()
        self._session.peer_connection = pc
        self._session.remote_tracks = []
        self._session.pending_candidates = []
        return pc

    async def _flush_pending_candidates(self, pc: RTCPeerConnection) -> None:
        pending = self._session.pending_candidates
        self._session.pending_candidates = []
        for candidate in pending:
            try:
                await pc.addIceCandidate(candidate)
            except Exception:
                logger.exception("Failed to add buffered remote candidate")

    def _announce_local_candidates(self, pc: RTCPeerConnection, sdp: str) -> None:
        if not self._trickle_candidates:
            return
        for payload in candidates_in_sdp(sdp):
            self.post(LocalCandidate(payload, source=pc))
