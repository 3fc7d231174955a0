import pytest

from caller.media_controls import MediaControls
from caller.media_devices import MediaAcquisitionError
from caller.negotiation import CallPhase, NegotiationStateMachine
from conftest import ANSWER_SDP, RemoteTrackStub
from shared.protocol import SignalingAction


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def _call(channel, devices, surface, factory):
    machine = NegotiationStateMachine(channel, devices, surface, peer_connection_factory=factory)
    await machine.start()
    await machine.acquire_media()
    return machine, MediaControls(machine)


async def _connect(machine, factory) -> None:
    await machine.start_call()
    machine.deliver(SignalingAction.ANSWER, {"type": "answer", "sdp": ANSWER_SDP})
    factory.current.emit("track", RemoteTrackStub("audio"))
    await machine.drain()


@pytest.mark.anyio
async def test_toggle_mute_flips_every_outgoing_audio_track(fake_channel, fake_devices, fake_surface, pc_factory) -> None:
    machine, controls = await _call(fake_channel, fake_devices, fake_surface, pc_factory)
    await controls.start_screen_share()
    audio = [sender.track for sender in pc_factory.current.getSenders() if sender.track.kind == "audio"]
    assert len(audio) == 2
    audio[1].enabled = False
    before = [track.enabled for track in audio]

    state = await controls.toggle_mute()

    assert [track.enabled for track in audio] == [not value for value in before]
    assert state.muted is True
    assert fake_channel.sent == []

    state = await controls.toggle_mute()
    assert [track.enabled for track in audio] == before
    assert state.muted is False
    await machine.stop()


@pytest.mark.anyio
async def test_toggle_mute_is_ignored_before_media(fake_channel, fake_devices, fake_surface, pc_factory) -> None:
    fake_devices.fail_user_media = True
    machine = NegotiationStateMachine(fake_channel, fake_devices, fake_surface, peer_connection_factory=pc_factory)
    await machine.start()
    with pytest.raises(MediaAcquisitionError):
        await machine.acquire_media()

    state = await MediaControls(machine).toggle_mute()

    assert state.muted is False
    assert state.phase == CallPhase.IDLE
    await machine.stop()


@pytest.mark.anyio
async def test_screen_share_before_negotiation_does_not_offer(fake_channel, fake_devices, fake_surface, pc_factory) -> None:
    machine, controls = await _call(fake_channel, fake_devices, fake_surface, pc_factory)

    state = await controls.start_screen_share()
    await machine.drain()

    assert state.sharing is True
    kinds = [sender.track.kind for sender in pc_factory.current.getSenders()]
    assert kinds == ["audio", "video", "audio"]
    assert fake_surface.source == "screen"
    assert fake_channel.sent == []
    await machine.stop()


@pytest.mark.anyio
async def test_screen_share_during_call_sends_new_offer(fake_channel, fake_devices, fake_surface, pc_factory) -> None:
    machine, controls = await _call(fake_channel, fake_devices, fake_surface, pc_factory)
    await _connect(machine, pc_factory)
    offers_before = fake_channel.actions().count(SignalingAction.OFFER)

    await controls.start_screen_share()
    await machine.drain()

    assert fake_channel.actions().count(SignalingAction.OFFER) == offers_before + 1
    assert machine.phase == CallPhase.CONNECTED
    await machine.stop()


@pytest.mark.anyio
async def test_screen_audio_follows_mute_state(fake_channel, fake_devices, fake_surface, pc_factory) -> None:
    machine, controls = await _call(fake_channel, fake_devices, fake_surface, pc_factory)
    await controls.toggle_mute()

    await controls.start_screen_share()

    screen_audio = machine.session.local_media.screen_tracks[1]
    assert screen_audio.enabled is False
    await machine.stop()


@pytest.mark.anyio
async def test_stop_screen_share_removes_only_video(fake_channel, fake_devices, fake_surface, pc_factory) -> None:
    machine, controls = await _call(fake_channel, fake_devices, fake_surface, pc_factory)
    await _connect(machine, pc_factory)
    await controls.start_screen_share()
    await machine.drain()
    video, screen_audio = machine.session.local_media.screen_tracks

    state = await controls.stop_screen_share()

    assert state.sharing is False
    assert video.readyState == "ended"
    assert screen_audio.readyState == "live"
    tracks = [sender.track for sender in pc_factory.current.getSenders()]
    assert video not in tracks
    assert screen_audio in tracks
    assert machine.session.local_media.screen_tracks == [screen_audio]
    assert fake_surface.source == "remote"
    await machine.stop()


@pytest.mark.anyio
async def test_screen_capture_failure_is_reported(fake_channel, fake_devices, fake_surface, pc_factory) -> None:
    machine, controls = await _call(fake_channel, fake_devices, fake_surface, pc_factory)
    fake_devices.fail_display_media = True

    with pytest.raises(MediaAcquisitionError):
        await controls.start_screen_share()

    state = machine.state
    assert state.phase == CallPhase.MEDIA_ACQUIRED
    assert state.sharing is False
    assert "cancelled" in state.error
    await machine.stop()


@pytest.mark.anyio
async def test_hang_up_through_controls_is_idempotent(fake_channel, fake_devices, fake_surface, pc_factory) -> None:
    machine, controls = await _call(fake_channel, fake_devices, fake_surface, pc_factory)
    await controls.start_screen_share()

    first = await controls.hang_up()
    second = await controls.hang_up()

    assert first.phase == second.phase == CallPhase.CLOSED
    assert first.sharing is False
    assert pc_factory.current.close_count == 1
    assert all(sender.track.readyState == "ended" for sender in pc_factory.current.getSenders())
    await machine.stop()


@pytest.mark.anyio
async def test_connected_call_can_defer_screen_share_offer(fake_channel, fake_devices, fake_surface, pc_factory) -> None:
    machine = NegotiationStateMachine(fake_channel, fake_devices, fake_surface, peer_connection_factory=pc_factory)
    await machine.start()
    await machine.acquire_media()
    controls = MediaControls(machine, reoffer_when_connected=False)
    await _connect(machine, pc_factory)
    pc_factory.current.connectionState = "connected"
    offers_before = fake_channel.actions().count(SignalingAction.OFFER)

    await controls.start_screen_share()
    await machine.drain()

    assert fake_channel.actions().count(SignalingAction.OFFER) == offers_before
    assert machine.state.sharing is True
    assert machine.phase == CallPhase.CONNECTED

    await machine.start_call()
    assert fake_channel.actions().count(SignalingAction.OFFER) == offers_before + 1
    kinds = [sender.track.kind for sender in pc_factory.current.getSenders()]
    assert "video" in kinds
    await machine.stop()
