"""Live speech-to-text session for one line attempt.

The session fetches a short-lived token, opens the microphone and a
streaming connection whose recognizer commits segments on voice activity,
and keeps two buffers: the current partial transcript and the committed
text so far. stop_listening() scores the combined transcript against the
expected line.

Every attempt gets a generation number. Teardown bumps it, and stream
events are only applied while their generation is current, so nothing
from a torn-down attempt can touch the buffers.
"""

import asyncio
import base64
import json
import logging
import os
import time
from typing import Awaitable, Callable

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from scene_partner.capture import MicrophoneCapture
from scene_partner.constants import (
    API_KEY_ENV,
    STT_AUDIO_FORMAT,
    STT_CLOSE_TIMEOUT,
    STT_COMMIT_STRATEGY,
    STT_SAMPLE_RATE,
    STT_TOKEN_TIMEOUT,
    STT_TOKEN_URL,
    STT_URL_ENV,
    STT_WS_URL,
    TOKEN_URL_ENV,
)
from scene_partner.errors import CredentialError, RehearsalError, TransportError
from scene_partner.models import Metrics
from scene_partner.scoring import score

logger = logging.getLogger(__name__)

STATES = ("idle", "connecting", "listening", "error")


async def fetch_token(url: str | None = None, api_key: str | None = None) -> str:
    """Request a single-use speech-to-text token.

    Raises CredentialError when no API key is configured or the request fails.
    """
    url = url or os.environ.get(TOKEN_URL_ENV, STT_TOKEN_URL)
    api_key = api_key or os.environ.get(API_KEY_ENV)
    if not api_key:
        raise CredentialError(f"{API_KEY_ENV} is not set")

    try:
        async with httpx.AsyncClient(timeout=STT_TOKEN_TIMEOUT) as client:
            response = await client.post(url, headers={"xi-api-key": api_key})
    except httpx.HTTPError as e:
        raise CredentialError(f"Failed to get ASR token: {e}") from e

    if response.status_code != 200:
        logger.error("Token request failed with %d: %s", response.status_code, response.text)
        raise CredentialError(f"Failed to get ASR token: HTTP {response.status_code}")
    try:
        token = response.json().get("token")
    except (ValueError, AttributeError):
        token = None
    if not token:
        raise CredentialError("Failed to get ASR token: no token in response")
    return token


def configure_message() -> dict:
    """First message on a new stream."""
    return {
        "type": "configure",
        "audio_format": STT_AUDIO_FORMAT,
        "sample_rate": STT_SAMPLE_RATE,
        "commit_strategy": STT_COMMIT_STRATEGY,
    }


class SpeechSession:
    """Owns one speech-to-text stream at a time.

    States: idle → connecting → listening → (idle | error). Observers are
    plain callables: on_partial(text), on_committed(text),
    on_final(spoken, metrics) and on_error(message).
    """

    def __init__(
        self,
        token_provider: Callable[[], Awaitable[str]] | None = None,
        url: str | None = None,
        capture_factory: Callable[[], MicrophoneCapture] | None = None,
        connect=None,
        on_partial: Callable[[str], None] | None = None,
        on_committed: Callable[[str], None] | None = None,
        on_final: Callable[[str, Metrics], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ):
        self.token_provider = token_provider or fetch_token
        self.url = url or os.environ.get(STT_URL_ENV, STT_WS_URL)
        self.capture_factory = capture_factory or MicrophoneCapture
        self.connect = connect or websockets.connect
        self.on_partial = on_partial
        self.on_committed = on_committed
        self.on_final = on_final
        self.on_error = on_error

        self.state = "idle"
        self.error: str | None = None
        self.partial = ""
        self.final = ""
        self.last_transcript = ""
        self._expected = ""
        self._started_at: float | None = None
        self._generation = 0
        self._mic = None
        self._ws = None
        self._sender: asyncio.Task | None = None
        self._receiver: asyncio.Task | None = None

    @property
    def transcript(self) -> str:
        """Committed text plus the pending partial, as heard so far."""
        return " ".join(p for p in (self.final.strip(), self.partial.strip()) if p)

    @property
    def is_active(self) -> bool:
        return self.state in ("connecting", "listening")

    async def start_listening(self, expected_text: str) -> None:
        """Open microphone and stream for a new attempt at expected_text.

        Any previous attempt is torn down first. On failure everything
        acquired so far is released, state becomes "error", on_error is
        called and the RehearsalError is re-raised.
        """
        await self._teardown()
        generation = self._generation
        self.partial = ""
        self.final = ""
        self.error = None
        self._expected = expected_text
        self._started_at = time.monotonic()
        self.state = "connecting"
        logger.debug("Speech session %d connecting", generation)

        try:
            try:
                token = await self.token_provider()
            except CredentialError:
                raise
            except Exception as e:
                raise CredentialError(f"Failed to get ASR token: {e}") from e
            if generation != self._generation:
                return

            mic = self.capture_factory()
            self._mic = mic
            await mic.open()

            try:
                ws = await self.connect(f"{self.url}?token={token}")
            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                raise TransportError(f"Failed to connect to speech service: {e}") from e
            if generation != self._generation:
                await self._close_socket(ws)
                return
            self._ws = ws

            try:
                await ws.send(json.dumps(configure_message()))
            except (WebSocketException, OSError) as e:
                raise TransportError(f"Failed to configure speech stream: {e}") from e
        except RehearsalError as e:
            if generation != self._generation:
                logger.debug("Speech session %d stopped while connecting: %s", generation, e)
                return
            await self._fail(generation, e)
            raise
        if generation != self._generation:
            return

        self._sender = asyncio.create_task(self._send_audio(generation, mic, ws))
        self._receiver = asyncio.create_task(self._receive(generation, ws))
        self.state = "listening"
        logger.info("Listening for: %s", expected_text[:60])

    async def stop_listening(self) -> Metrics | None:
        """End the attempt and score it.

        Returns None when nothing was heard or no attempt is running; safe
        to call repeatedly.
        """
        started_at, self._started_at = self._started_at, None
        if started_at is None:
            await self._teardown()
            return None

        elapsed_ms = int((time.monotonic() - started_at) * 1000)
        spoken = self.transcript
        expected = self._expected
        await self._teardown()
        self.partial = ""
        self.final = ""
        self.last_transcript = spoken

        if not spoken:
            logger.info("Stopped listening, nothing heard")
            return None
        metrics = score(expected, spoken, elapsed_ms)
        logger.info("Stopped listening after %d ms, accuracy %d%%", elapsed_ms, metrics.accuracy)
        if self.on_final is not None:
            self.on_final(spoken, metrics)
        return metrics

    async def close(self) -> None:
        """Owner disposal: release everything and drop the buffers."""
        self._started_at = None
        await self._teardown()
        self.partial = ""
        self.final = ""

    # --- stream handling ---

    def handle_message(self, generation: int, raw) -> None:
        """Apply one stream message if it belongs to the current attempt."""
        if generation != self._generation:
            logger.debug("Dropping message from stale session %d", generation)
            return
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Unparseable speech stream message: %r", str(raw)[:80])
            return
        if not isinstance(message, dict):
            logger.warning("Unexpected speech stream message: %r", message)
            return

        kind = message.get("type") or message.get("message_type")
        text = message.get("text") or ""
        if not isinstance(kind, (str, type(None))) or not isinstance(text, str):
            logger.warning("Malformed speech stream message: %r", message)
            return
        if kind == "partial_transcript":
            self.partial = text
            if self.on_partial is not None:
                self.on_partial(text)
        elif kind == "committed_transcript":
            self.final = f"{self.final} {text}".strip() if text else self.final
            self.partial = ""
            if self.on_committed is not None:
                self.on_committed(text)
        elif kind and "error" in kind:
            detail = message.get("error") or message.get("message") or kind
            raise TransportError(f"Speech service error: {detail}")
        else:
            logger.debug("Ignoring speech stream message type %r", kind)

    async def _send_audio(self, generation: int, mic, ws) -> None:
        try:
            while generation == self._generation:
                block = await mic.queue.get()
                payload = {"type": "audio", "audio": base64.b64encode(block).decode("ascii")}
                await ws.send(json.dumps(payload))
        except (ConnectionClosed, OSError) as e:
            await self._fail(generation, TransportError(f"Connection error occurred: {e}"))

    async def _receive(self, generation: int, ws) -> None:
        try:
            async for raw in ws:
                self.handle_message(generation, raw)
        except TransportError as e:
            await self._fail(generation, e)
            return
        except (ConnectionClosed, OSError) as e:
            await self._fail(generation, TransportError(f"Connection error occurred: {e}"))
            return

        if generation == self._generation and self.state == "listening":
            logger.info("Speech stream closed by server")
            self.state = "idle"
            await self._release()

    async def _fail(self, generation: int, error: RehearsalError) -> None:
        if generation != self._generation:
            return
        message = str(error)
        logger.warning("Speech session failed: %s", message)
        await self._teardown()
        self.state = "error"
        self.error = message
        if self.on_error is not None:
            self.on_error(message)

    # --- teardown ---

    async def _teardown(self) -> None:
        """Invalidate the current attempt and release its resources."""
        self._generation += 1
        await self._release()
        if self.state in ("connecting", "listening"):
            self.state = "idle"

    async def _release(self) -> None:
        current = asyncio.current_task()
        mic, self._mic = self._mic, None
        sender, self._sender = self._sender, None
        ws, self._ws = self._ws, None
        receiver, self._receiver = self._receiver, None

        if mic is not None:
            mic.close()
        tasks = [t for t in (sender, receiver) if t is not None and t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if ws is not None:
            await self._close_socket(ws)

    @staticmethod
    async def _close_socket(ws) -> None:
        try:
            await asyncio.wait_for(ws.close(), STT_CLOSE_TIMEOUT)
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            logger.debug("Error closing speech stream: %s", e)
