from __future__ import annotations

import asyncio
import fractions
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
CHANNELS = 1
FRAME_SAMPLES = int(SAMPLE_RATE * 0.02)  # 20ms
CAPTURE_QUEUE_FRAMES = 50

SCREEN_WIDTH = 1920
SCREEN_HEIGHT = 1080
SCREEN_FPS = 30


class MediaAcquisitionError(RuntimeError):
    """A capture device was denied, missing, or failed to open."""


class LocalAudioTrack(MediaStreamTrack):
    """Outgoing audio track with an ``enabled`` switch.

    While disabled the track keeps pulling frames from its source, so timing
    and the negotiated stream stay intact, but every sample is zeroed.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, *, label: str = "audio") -> None:
        super().__init__()
        self._source = source
        self.label = label
        self.enabled = True

    async def recv(self):
        frame = await self._source.recv()
        if not self.enabled:
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class MicrophoneTrack(MediaStreamTrack):
    """Captures the default microphone with sounddevice as 20 ms frames."""

    kind = "audio"

    def __init__(self, device: Optional[str] = None, *, sample_rate: int = SAMPLE_RATE) -> None:
        super().__init__()
        self._device = device
        self._sample_rate = sample_rate
        self._frame_samples = int(sample_rate * 0.02)
        self._queue: asyncio.Queue[np.ndarray] = asyncio.Queue(maxsize=CAPTURE_QUEUE_FRAMES)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stream = None
        self._timestamp = 0

    def start(self) -> None:
        import sounddevice as sd

        self._loop = asyncio.get_running_loop()
        self._stream = sd.InputStream(
            device=self._device,
            samplerate=self._sample_rate,
            channels=CHANNELS,
            dtype="int16",
            blocksize=self._frame_samples,
            callback=self._capture_callback,
        )
        self._stream.start()
        logger.info("Microphone capture started (device=%s, %d Hz)", self._device or "default", self._sample_rate)

    def _capture_callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio input status: %s", status)
        if self._loop is None or self.readyState != "live":
            return
        samples = np.array(indata, dtype=np.int16).reshape(1, -1)
        self._loop.call_soon_threadsafe(self._enqueue, samples)

    def _enqueue(self, samples: np.ndarray) -> None:
        try:
            self._queue.put_nowait(samples)
        except asyncio.QueueFull:
            # Drop audio if nobody is reading
            pass

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        samples = await self._queue.get()
        frame = AudioFrame.from_ndarray(samples, format="s16", layout="mono")
        frame.sample_rate = self._sample_rate
        frame.pts = self._timestamp
        frame.time_base = fractions.Fraction(1, self._sample_rate)
        self._timestamp += samples.shape[1]
        return frame

    def stop(self) -> None:
        super().stop()
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception:
                logger.exception("Error while closing microphone stream")
            self._stream = None


@dataclass(slots=True)
class LocalMedia:
    """The microphone track plus whatever screen capture is active."""

    microphone: Optional[LocalAudioTrack] = None
    screen_tracks: List[MediaStreamTrack] = field(default_factory=list)

    def audio_tracks(self) -> List[MediaStreamTrack]:
        return [track for track in self.all_tracks() if track.kind == "audio"]

    def all_tracks(self) -> List[MediaStreamTrack]:
        tracks: List[MediaStreamTrack] = []
        if self.microphone is not None:
            tracks.append(self.microphone)
        tracks.extend(self.screen_tracks)
        return tracks

    def stop_all(self) -> None:
        for track in self.all_tracks():
            track.stop()
        self.microphone = None
        self.screen_tracks = []


def default_screen_source() -> Tuple[str, str]:
    """Return the (input, ffmpeg format) pair that grabs the main display."""

    if sys.platform.startswith("linux"):
        return os.environ.get("DISPLAY", ":0"), "x11grab"
    if sys.platform == "darwin":
        return "Capture screen 0:none", "avfoundation"
    if sys.platform.startswith("win"):
        return "desktop", "gdigrab"
    raise MediaAcquisitionError(f"Screen capture is not supported on {sys.platform}")


class MediaDevices:
    """Opens the local capture devices used by a call."""

    def __init__(
        self,
        *,
        audio_device: Optional[str] = None,
        screen_source: Optional[str] = None,
        screen_format: Optional[str] = None,
        screen_fps: int = SCREEN_FPS,
        screen_size: Tuple[int, int] = (SCREEN_WIDTH, SCREEN_HEIGHT),
    ) -> None:
        self._audio_device = audio_device
        self._screen_source = screen_source
        self._screen_format = screen_format
        self._screen_fps = max(1, min(60, screen_fps))
        self._screen_size = screen_size

    async def get_user_media(self) -> LocalMedia:
        """Open the microphone; raises MediaAcquisitionError when unavailable."""

        try:
            microphone = MicrophoneTrack(self._audio_device)
            microphone.start()
        except Exception as exc:
            raise MediaAcquisitionError(f"Unable to open microphone: {exc}") from exc
        return LocalMedia(microphone=LocalAudioTrack(microphone, label="microphone"))

    async def get_display_media(self) -> List[MediaStreamTrack]:
        """Open a screen grab; returns its video track and any audio track."""

        if self._screen_source is not None:
            source, fmt = self._screen_source, self._screen_format
        else:
            source, fmt = default_screen_source()
        width, height = self._screen_size
        options: Dict[str, str] = {
            "framerate": str(self._screen_fps),
            "video_size": f"{width}x{height}",
        }
        try:
            player = await asyncio.to_thread(MediaPlayer, source, format=fmt, options=options)
        except Exception as exc:
            raise MediaAcquisitionError(f"Unable to capture screen {source!r}: {exc}") from exc
        tracks: List[MediaStreamTrack] = []
        if player.video is not None:
            tracks.append(player.video)
        if player.audio is not None:
            tracks.append(LocalAudioTrack(player.audio, label="screen-audio"))
        if not tracks:
            raise MediaAcquisitionError(f"Screen source {source!r} produced no tracks")
        logger.info("Screen capture opened from %s (%s, %d fps)", source, fmt, self._screen_fps)
        return tracks
