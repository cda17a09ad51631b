"""Microphone capture for the speech stream."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np
import sounddevice as sd

from scene_partner.constants import (
    AGC_MAX_GAIN,
    AGC_TARGET_RMS,
    NOISE_GATE_RMS,
    STT_BLOCK_SIZE,
    STT_SAMPLE_RATE,
)
from scene_partner.errors import MicrophonePermissionError

logger = logging.getLogger(__name__)

_QUEUE_LIMIT = 64   # blocks buffered before new audio is dropped


@dataclass(frozen=True)
class CaptureSettings:
    sample_rate: int = STT_SAMPLE_RATE
    block_size: int = STT_BLOCK_SIZE
    echo_cancellation: bool = True    # half-duplex: drop input while the partner speaks
    noise_suppression: bool = True    # gate blocks below NOISE_GATE_RMS
    auto_gain_control: bool = True    # scale blocks toward AGC_TARGET_RMS


def condition_block(block: np.ndarray, settings: CaptureSettings) -> np.ndarray:
    """Apply noise gate and gain control to one int16 block."""
    if not settings.noise_suppression and not settings.auto_gain_control:
        return block
    samples = block.astype(np.float32)
    rms = float(np.sqrt(np.mean(samples ** 2))) if samples.size else 0.0

    if settings.noise_suppression and rms < NOISE_GATE_RMS:
        return np.zeros_like(block)
    if settings.auto_gain_control and rms > 0:
        gain = min(AGC_TARGET_RMS / rms, AGC_MAX_GAIN)
        samples = samples * gain
    return np.clip(samples, -32768, 32767).astype(np.int16)


class MicrophoneCapture:
    """16 kHz mono int16 capture delivering PCM blocks to an asyncio queue.

    The PortAudio callback runs on its own thread; blocks are handed to the
    event loop with call_soon_threadsafe. close() is idempotent.
    """

    def __init__(
        self,
        settings: CaptureSettings | None = None,
        is_partner_speaking: Callable[[], bool] | None = None,
    ):
        self.settings = settings or CaptureSettings()
        self._is_partner_speaking = is_partner_speaking
        self._stream = None
        self._loop = None
        self._closed = False
        self.queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=_QUEUE_LIMIT)

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.debug("Microphone status: %s", status)
        if self._closed or self._loop is None:
            return
        if (
            self.settings.echo_cancellation
            and self._is_partner_speaking is not None
            and self._is_partner_speaking()
        ):
            return
        block = condition_block(indata[:, 0].copy(), self.settings)
        self._loop.call_soon_threadsafe(self._enqueue, block.tobytes())

    def _enqueue(self, data: bytes) -> None:
        if self._closed:
            return
        if self.queue.full():
            logger.debug("Microphone queue full, dropping block")
            return
        self.queue.put_nowait(data)

    async def open(self) -> None:
        """Start capturing. Raises MicrophonePermissionError if denied."""
        self._loop = asyncio.get_running_loop()
        try:
            self._stream = sd.InputStream(
                samplerate=self.settings.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.settings.block_size,
                callback=self._callback,
            )
            self._stream.start()
        except (sd.PortAudioError, OSError) as e:
            self.close()
            raise MicrophonePermissionError(f"Microphone unavailable: {e}") from e
        logger.debug("Microphone open at %d Hz", self.settings.sample_rate)

    def close(self) -> None:
        """Release the input stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError as e:
                logger.warning("Error closing microphone: %s", e)
        logger.debug("Microphone closed")
