"""Partner voice: edge-tts synthesis with retry logic, played through sounddevice."""

import asyncio
import io
import logging

import edge_tts
import numpy as np
import sounddevice as sd
from pydub import AudioSegment

from scene_partner.constants import (
    TTS_RATE,
    TTS_RETRY_BASE_DELAY,
    TTS_RETRY_COUNT,
    TTS_TARGET_DBFS,
)
from scene_partner.errors import PlaybackError
from scene_partner.voices import resolve_voice

logger = logging.getLogger(__name__)


async def synthesize(text: str, voice: str, rate: str = TTS_RATE) -> bytes:
    """Fetch MP3 audio for one line with retry logic.

    Retries on network errors or empty audio, with exponential backoff.
    Raises PlaybackError once retries are exhausted.
    """
    last_error = None
    for attempt in range(TTS_RETRY_COUNT):
        try:
            communicate = edge_tts.Communicate(text, voice, rate=rate)
            chunks = []
            async for chunk in communicate.stream():
                if chunk["type"] == "audio":
                    chunks.append(chunk["data"])
            audio = b"".join(chunks)
            if audio:
                return audio
            last_error = PlaybackError(f"TTS produced no audio for: {text[:50]}...")
        except Exception as e:
            last_error = e

        if attempt < TTS_RETRY_COUNT - 1:
            delay = TTS_RETRY_BASE_DELAY * (2 ** attempt)
            logger.debug("TTS attempt %d failed (%s), retrying in %.1fs", attempt + 1, last_error, delay)
            await asyncio.sleep(delay)

    if isinstance(last_error, PlaybackError):
        raise last_error
    raise PlaybackError(f"Failed to generate speech: {last_error}") from last_error


def decode(mp3: bytes, target_dbfs: float = TTS_TARGET_DBFS) -> AudioSegment:
    """Decode MP3 bytes and bring the clip to the playback level.

    Silent clips (dBFS = -inf) are left unchanged.
    """
    audio = AudioSegment.from_file(io.BytesIO(mp3), format="mp3")
    if audio.dBFS == float("-inf"):
        return audio
    return audio + (target_dbfs - audio.dBFS)


def to_samples(audio: AudioSegment) -> np.ndarray:
    """int16 sample frames shaped (frames, channels) for sounddevice."""
    samples = np.array(audio.get_array_of_samples(), dtype=np.int16)
    return samples.reshape((-1, audio.channels))


class Synthesizer:
    """Speaks partner lines, one at a time.

    speak() completes when playback ends; stop() cuts the current line off.
    Starting a new line stops the previous one first.
    """

    def __init__(self, rate: str = TTS_RATE, target_dbfs: float = TTS_TARGET_DBFS):
        self.rate = rate
        self.target_dbfs = target_dbfs
        self._playing = False

    @property
    def is_speaking(self) -> bool:
        return self._playing

    async def speak(self, text: str, selector: str | None = None) -> None:
        """Synthesize and play a line. Raises PlaybackError on failure."""
        self.stop()
        voice = resolve_voice(selector)
        logger.debug("Speaking %d chars with %s", len(text), voice)

        mp3 = await synthesize(text, voice, rate=self.rate)
        try:
            audio = await asyncio.to_thread(decode, mp3, self.target_dbfs)
        except Exception as e:
            raise PlaybackError(f"Failed to decode audio: {e}") from e

        try:
            sd.play(to_samples(audio), samplerate=audio.frame_rate)
            self._playing = True
            await asyncio.to_thread(sd.wait)
        except asyncio.CancelledError:
            self.stop()
            raise
        except sd.PortAudioError as e:
            self.stop()
            raise PlaybackError(f"Failed to play audio: {e}") from e
        finally:
            self._playing = False

    def stop(self) -> None:
        """Stop any line currently playing. Safe to call at any time."""
        if self._playing:
            logger.debug("Stopping partner playback")
        self._playing = False
        sd.stop()
