from __future__ import annotations

import asyncio
import fractions
import logging
from typing import Optional

import cv2
import numpy as np
import sounddevice as sd
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame
from mss import mss

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
CHANNELS = 1
FRAME_SAMPLES = int(SAMPLE_RATE * 0.02)  # 20ms
DEFAULT_MAX_WIDTH = 1920


class ScreenCaptureTrack(VideoStreamTrack):
    """Video track that grabs the local screen for each outgoing frame."""

    def __init__(self, *, monitor: Optional[int] = None, max_width: int = DEFAULT_MAX_WIDTH) -> None:
        super().__init__()
        self._monitor = monitor
        self._max_width = max(2, max_width)

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        image = await asyncio.to_thread(self._capture_frame)
        frame = VideoFrame.from_ndarray(image, format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame

    def _capture_frame(self) -> np.ndarray:
        with mss() as sct:
            if self._monitor is not None and 0 < self._monitor < len(sct.monitors):
                monitor = sct.monitors[self._monitor]
            else:
                monitor = sct.monitors[1]
            raw = sct.grab(monitor)
        frame = cv2.cvtColor(np.array(raw), cv2.COLOR_BGRA2BGR)
        height, width = frame.shape[:2]
        scale = min(1.0, self._max_width / float(width))
        # yuv420p encoders need even dimensions
        target_width = max(2, int(width * scale) // 2 * 2)
        target_height = max(2, int(height * scale) // 2 * 2)
        if (target_width, target_height) != (width, height):
            frame = cv2.resize(frame, (target_width, target_height), interpolation=cv2.INTER_AREA)
        return frame


class MicrophoneTrack(MediaStreamTrack):
    """Audio track fed by a sounddevice input stream."""

    kind = "audio"

    def __init__(self, *, device: Optional[int | str] = None) -> None:
        super().__init__()
        self._device = device
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: asyncio.Queue[np.ndarray] = asyncio.Queue(maxsize=50)
        self._stream: Optional[sd.InputStream] = None
        self._pts = 0

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        self._ensure_stream()
        samples = await self._queue.get()
        frame = AudioFrame.from_ndarray(samples, format="s16", layout="mono")
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, SAMPLE_RATE)
        self._pts += samples.shape[1]
        return frame

    def stop(self) -> None:
        super().stop()
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception:
                logger.exception("Failed to close microphone stream")
            self._stream = None

    def _ensure_stream(self) -> None:
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._stream = sd.InputStream(
            samplerate=SAMPLE_RATE,
            channels=CHANNELS,
            dtype="int16",
            blocksize=FRAME_SAMPLES,
            device=self._device,
            callback=self._capture_callback,
        )
        self._stream.start()
        logger.info("Microphone capture started")

    def _capture_callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio input status: %s", status)
        if self._loop is None:
            return
        samples = np.array(indata, dtype=np.int16).reshape(1, -1)
        self._loop.call_soon_threadsafe(self._enqueue, samples)

    def _enqueue(self, samples: np.ndarray) -> None:
        try:
            self._queue.put_nowait(samples)
        except asyncio.QueueFull:
            # Drop audio if the encoder is falling behind
            pass
