from __future__ import annotations

import asyncio
import logging
import queue
import time
from typing import Awaitable, Callable, List, Optional

import cv2
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioResampler

logger = logging.getLogger(__name__)

PLAYBACK_RATE = 48000
PLAYBACK_CHANNELS = 1
PLAYBACK_BLOCK = int(PLAYBACK_RATE * 0.02)

FrameCallback = Callable[[bytes, str], Awaitable[None] | None]


class SpeakerPlayback:
    """Plays decoded remote audio frames through sounddevice."""

    def __init__(self, *, sample_rate: int = PLAYBACK_RATE) -> None:
        self._sample_rate = sample_rate
        self._queue: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=32)
        self._resampler = AudioResampler(format="s16", layout="mono", rate=sample_rate)
        self._stream = None
        self._pending = np.zeros(0, dtype=np.int16)

    def start(self) -> None:
        import sounddevice as sd

        self._stream = sd.OutputStream(
            samplerate=self._sample_rate,
            channels=PLAYBACK_CHANNELS,
            dtype="int16",
            blocksize=PLAYBACK_BLOCK,
            callback=self._playback_callback,
        )
        self._stream.start()

    def stop(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception:
                logger.exception("Error while closing speaker stream")
            self._stream = None

    def feed(self, frame) -> None:
        for resampled in self._resampler.resample(frame):
            samples = resampled.to_ndarray().reshape(-1).astype(np.int16)
            try:
                self._queue.put_nowait(samples)
            except queue.Full:
                # Drop audio if playback is falling behind
                pass

    def _playback_callback(self, outdata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio output status: %s", status)
        required = frames * PLAYBACK_CHANNELS
        while self._pending.size < required:
            try:
                self._pending = np.concatenate([self._pending, self._queue.get_nowait()])
            except queue.Empty:
                break
        chunk = self._pending[:required]
        self._pending = self._pending[required:]
        if chunk.size < required:
            padded = np.zeros(required, dtype=np.int16)
            padded[: chunk.size] = chunk
            chunk = padded
        outdata[:] = chunk.reshape(frames, PLAYBACK_CHANNELS)


class PresentationSurface:
    """Where the call is shown locally: one video view plus speaker output.

    ``show`` points the surface at a set of tracks. The video track is turned
    into JPEG frames handed to ``on_frame``; audio is played through the
    speakers unless the tracks are the local screen capture.
    """

    def __init__(
        self,
        on_frame: Optional[FrameCallback] = None,
        *,
        max_fps: float = 10.0,
        jpeg_quality: int = 75,
        play_audio: bool = True,
    ) -> None:
        self._on_frame = on_frame
        self._min_interval = 1.0 / max(1.0, max_fps)
        self._quality = int(np.clip(jpeg_quality, 10, 95))
        self._play_audio = play_audio
        self._tasks: List[asyncio.Task[None]] = []
        self._speaker: Optional[SpeakerPlayback] = None
        self.source: Optional[str] = None
        self.tracks: List[MediaStreamTrack] = []

    def show(self, tracks: List[MediaStreamTrack], source: str) -> None:
        self._cancel()
        self.source = source
        self.tracks = list(tracks)
        video = next((track for track in tracks if track.kind == "video"), None)
        if video is not None:
            self._tasks.append(asyncio.create_task(self._pump_video(video, source)))
        if source == "remote":
            for track in tracks:
                if track.kind == "audio":
                    self._tasks.append(asyncio.create_task(self._pump_audio(track, play=self._play_audio)))
        logger.info("Presenting %s media (%d track(s))", source, len(self.tracks))

    def clear(self) -> None:
        self._cancel()
        self.source = None
        self.tracks = []

    def _cancel(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        if self._speaker is not None:
            self._speaker.stop()
            self._speaker = None

    async def _pump_video(self, track: MediaStreamTrack, source: str) -> None:
        last_sent = 0.0
        try:
            while True:
                frame = await track.recv()
                now = time.monotonic()
                if now - last_sent < self._min_interval:
                    continue
                last_sent = now
                encoded = self.encode_frame(frame.to_ndarray(format="bgr24"))
                if encoded is None or self._on_frame is None:
                    continue
                result = self._on_frame(encoded, source)
                if asyncio.iscoroutine(result):
                    await result
        except (MediaStreamError, asyncio.CancelledError):
            return
        except Exception:
            logger.exception("Video presentation of %s media stopped", source)

    async def _pump_audio(self, track: MediaStreamTrack, *, play: bool) -> None:
        try:
            if play and self._speaker is None:
                self._speaker = SpeakerPlayback()
                self._speaker.start()
            while True:
                frame = await track.recv()
                # remote audio is always consumed
                if play and self._speaker is not None:
                    self._speaker.feed(frame)
        except (MediaStreamError, asyncio.CancelledError):
            return
        except Exception:
            logger.exception("Remote audio playback stopped")

    def encode_frame(self, image: np.ndarray) -> Optional[bytes]:
        success, encoded = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), self._quality])
        if not success:
            return None
        return bytes(encoded)
