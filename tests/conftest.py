import asyncio
import itertools
from typing import Any, Callable, List, Optional, Tuple

import pytest
from aiortc import AudioStreamTrack, RTCSessionDescription, VideoStreamTrack
from aiortc.exceptions import InvalidStateError
from pyee.asyncio import AsyncIOEventEmitter

from caller.media_devices import LocalAudioTrack, LocalMedia, MediaAcquisitionError
from shared.protocol import SignalingAction

OFFER_SDP = "\r\n".join(
    [
        "v=0",
        "o=- 1 1 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 96",
        "c=IN IP4 0.0.0.0",
        "a=mid:0",
        "a=candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host",
        "a=end-of-candidates",
        "",
    ]
)

ANSWER_SDP = "\r\n".join(
    [
        "v=0",
        "o=- 2 1 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 96",
        "c=IN IP4 0.0.0.0",
        "a=mid:0",
        "a=candidate:1 1 udp 2130706431 192.168.1.20 50002 typ host",
        "a=end-of-candidates",
        "",
    ]
)

REMOTE_CANDIDATE = {
    "candidate": "candidate:1 1 udp 2130706431 192.168.1.20 50002 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


class FakeSender:
    def __init__(self, track) -> None:
        self.track = track

    def replaceTrack(self, track) -> None:
        self.track = track


class FakePeerConnection(AsyncIOEventEmitter):
    """Mimics the signaling-state rules of aiortc's RTCPeerConnection."""

    _names = itertools.count(1)

    def __init__(self, *, fail_remote: bool = False) -> None:
        super().__init__()
        self.name = f"pc-{next(self._names)}"
        self.fail_remote = fail_remote
        self.signalingState = "stable"
        self.connectionState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.senders: List[FakeSender] = []
        self.candidates: list = []
        self.close_count = 0

    def addTrack(self, track) -> FakeSender:
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self) -> List[FakeSender]:
        return list(self.senders)

    async def createOffer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=OFFER_SDP, type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=ANSWER_SDP, type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        if self.fail_remote:
            raise ValueError("unparseable session description")
        if description.type == "offer" and self.signalingState == "have-local-offer":
            raise InvalidStateError('Cannot handle offer in signaling state "have-local-offer"')
        if description.type == "answer" and self.signalingState != "have-local-offer":
            raise InvalidStateError(f'Cannot handle answer in signaling state "{self.signalingState}"')
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate) -> None:
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.close_count += 1
        self.signalingState = "closed"


class PeerConnectionRecorder:
    """Factory handed to the state machine; remembers every connection it built."""

    def __init__(self) -> None:
        self.created: List[FakePeerConnection] = []
        self.fail_remote = False

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection(fail_remote=self.fail_remote)
        self.created.append(pc)
        return pc

    @property
    def current(self) -> FakePeerConnection:
        return self.created[-1]


class FakeChannel:
    def __init__(self) -> None:
        self.sent: List[Tuple[SignalingAction, Any]] = []
        self.forward: Optional[Callable[[SignalingAction, Any], None]] = None

    async def send(self, action: SignalingAction, payload: Any) -> None:
        self.sent.append((action, payload))
        if self.forward is not None:
            self.forward(action, payload)

    def actions(self) -> List[SignalingAction]:
        return [action for action, _ in self.sent]


class FakeSurface:
    def __init__(self) -> None:
        self.source: Optional[str] = None
        self.tracks: list = []
        self.history: List[Optional[str]] = []

    def show(self, tracks, source: str) -> None:
        self.source = source
        self.tracks = list(tracks)
        self.history.append(source)

    def clear(self) -> None:
        self.source = None
        self.tracks = []
        self.history.append(None)


class FakeDevices:
    def __init__(self) -> None:
        self.fail_user_media = False
        self.fail_display_media = False
        self.display_audio = True
        self.user_media_calls = 0

    async def get_user_media(self) -> LocalMedia:
        self.user_media_calls += 1
        if self.fail_user_media:
            raise MediaAcquisitionError("Unable to open microphone: permission denied")
        return LocalMedia(microphone=LocalAudioTrack(AudioStreamTrack(), label="microphone"))

    async def get_display_media(self) -> list:
        if self.fail_display_media:
            raise MediaAcquisitionError("Unable to capture screen ':0': cancelled")
        tracks: list = [VideoStreamTrack()]
        if self.display_audio:
            tracks.append(LocalAudioTrack(AudioStreamTrack(), label="screen-audio"))
        return tracks


class RemoteTrackStub:
    def __init__(self, kind: str) -> None:
        self.kind = kind


@pytest.fixture
def pc_factory() -> PeerConnectionRecorder:
    return PeerConnectionRecorder()


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def fake_surface() -> FakeSurface:
    return FakeSurface()


@pytest.fixture
def fake_devices() -> FakeDevices:
    return FakeDevices()


async def wait_for(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)
