"""Tests for the speech-to-text session."""

import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import FakeMic, FakeSocket
from scene_partner.asr import SpeechSession, configure_message, fetch_token
from scene_partner.errors import CredentialError, MicrophonePermissionError, TransportError


async def _token():
    return "tok-123"


def _session(socket=None, mic=None, token_provider=_token, **kwargs):
    """SpeechSession wired to fakes; returns (session, sockets, mics)."""
    sockets, mics = [], []

    async def connect(url):
        ws = socket or FakeSocket()
        ws.url = url
        sockets.append(ws)
        return ws

    def capture_factory():
        m = mic or FakeMic()
        mics.append(m)
        return m

    session = SpeechSession(
        token_provider=token_provider,
        url="wss://stt.test/v1/scribe",
        capture_factory=capture_factory,
        connect=connect,
        **kwargs,
    )
    return session, sockets, mics


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


# --- Lifecycle ---

def test_start_listening_opens_stream():
    """start_listening connects with the token and sends the configure message."""
    session, sockets, mics = _session()

    async def run():
        await session.start_listening("Hello there")
        assert session.state == "listening"
        assert session.is_active
        await session.close()

    asyncio.run(run())
    assert sockets[0].url == "wss://stt.test/v1/scribe?token=tok-123"
    assert sockets[0].sent[0] == configure_message()
    assert configure_message()["commit_strategy"] == "vad"
    assert mics[0].opened


def test_stop_before_start_returns_none():
    """Stopping without a running attempt is a quiet no-op."""
    session, _, _ = _session()
    assert asyncio.run(session.stop_listening()) is None
    assert session.state == "idle"


def test_stop_twice_is_safe():
    """The second stop returns None and raises nothing."""
    session, sockets, _ = _session()

    async def run():
        await session.start_listening("Hello there")
        sockets[0].feed({"type": "committed_transcript", "text": "Hello there"})
        await _settle()
        first = await session.stop_listening()
        second = await session.stop_listening()
        return first, second

    first, second = asyncio.run(run())
    assert first.accuracy == 100
    assert second is None


def test_transcript_buffers_and_scoring():
    """Committed text accumulates; stop joins it with the pending partial."""
    partials, committed, finals = [], [], []
    session, sockets, mics = _session(
        on_partial=partials.append,
        on_committed=committed.append,
        on_final=lambda spoken, metrics: finals.append((spoken, metrics)),
    )

    async def run():
        await session.start_listening("I didn't think you'd come")
        ws = sockets[0]
        ws.feed({"type": "partial_transcript", "text": "I didn't"})
        ws.feed({"type": "committed_transcript", "text": "I didn't think"})
        ws.feed({"type": "partial_transcript", "text": "you'd"})
        await _settle()
        assert session.final == "I didn't think"
        assert session.partial == "you'd"
        assert session.transcript == "I didn't think you'd"
        return await session.stop_listening()

    metrics = asyncio.run(run())
    assert partials == ["I didn't", "you'd"]
    assert committed == ["I didn't think"]
    assert metrics.matched_words == 4
    assert metrics.missed_words == ("come",)
    assert finals[0][0] == "I didn't think you'd"
    assert session.last_transcript == "I didn't think you'd"
    assert session.final == "" and session.partial == ""
    assert sockets[0].closed
    assert mics[0].closed
    assert session.state == "idle"


def test_stop_with_nothing_heard():
    """No transcript means no metrics."""
    session, _, _ = _session()

    async def run():
        await session.start_listening("Hello")
        return await session.stop_listening()

    assert asyncio.run(run()) is None


def test_audio_blocks_are_sent():
    """Captured PCM goes out base64-encoded."""
    session, sockets, mics = _session()

    async def run():
        await session.start_listening("Hello")
        mics[0].queue.put_nowait(b"\x01\x02\x03\x04")
        await _settle()
        await session.close()

    asyncio.run(run())
    audio = [m for m in sockets[0].sent if m["type"] == "audio"]
    assert audio == [{"type": "audio", "audio": base64.b64encode(b"\x01\x02\x03\x04").decode()}]


def test_restart_tears_down_previous_attempt():
    """A new attempt releases the old microphone and connection first."""
    session, sockets, mics = _session()

    async def run():
        await session.start_listening("One")
        await session.start_listening("Two")
        assert sockets[0].closed and mics[0].closed
        assert not sockets[1].closed
        await session.close()

    asyncio.run(run())
    assert len(sockets) == 2


# --- Failures ---

def test_credential_failure():
    """A missing token leaves the session in error with nothing acquired."""
    errors = []

    async def no_token():
        raise CredentialError("ELEVENLABS_API_KEY is not set")

    session, sockets, mics = _session(token_provider=no_token, on_error=errors.append)
    with pytest.raises(CredentialError):
        asyncio.run(session.start_listening("Hello"))
    assert session.state == "error"
    assert session.error == "ELEVENLABS_API_KEY is not set"
    assert errors == ["ELEVENLABS_API_KEY is not set"]
    assert mics == [] and sockets == []


def test_token_provider_exception_is_credential_error():
    """Unexpected token failures are reported as credential errors."""
    async def broken():
        raise RuntimeError("boom")

    session, _, _ = _session(token_provider=broken)
    with pytest.raises(CredentialError, match="boom"):
        asyncio.run(session.start_listening("Hello"))


def test_microphone_denied():
    """Microphone failure releases the mic and never connects."""
    mic = FakeMic(fail=MicrophonePermissionError("Microphone unavailable"))
    session, sockets, _ = _session(mic=mic)
    with pytest.raises(MicrophonePermissionError):
        asyncio.run(session.start_listening("Hello"))
    assert session.state == "error"
    assert mic.closed
    assert sockets == []


def test_connect_failure():
    """Connection errors become TransportError and release the mic."""
    mics = []

    async def refuse(url):
        raise OSError("Connection refused")

    def capture_factory():
        mics.append(FakeMic())
        return mics[-1]

    session = SpeechSession(token_provider=_token, capture_factory=capture_factory, connect=refuse)
    with pytest.raises(TransportError, match="Connection refused"):
        asyncio.run(session.start_listening("Hello"))
    assert session.state == "error"
    assert mics[0].closed


def test_server_error_message():
    """An error message from the service fails the session."""
    errors = []
    session, sockets, mics = _session(on_error=errors.append)

    async def run():
        await session.start_listening("Hello")
        sockets[0].feed({"message_type": "auth_error", "error": "invalid token"})
        await _settle()

    asyncio.run(run())
    assert session.state == "error"
    assert errors == ["Speech service error: invalid token"]
    assert sockets[0].closed
    assert mics[0].closed


def test_server_close_returns_to_idle():
    """A clean close from the server ends the attempt without error."""
    session, sockets, mics = _session()

    async def run():
        await session.start_listening("Hello")
        sockets[0].finish()
        await _settle()

    asyncio.run(run())
    assert session.state == "idle"
    assert session.error is None
    assert mics[0].closed


def test_malformed_message_skipped(caplog):
    """Unparseable messages are logged and ignored."""
    session, sockets, _ = _session()

    async def run():
        await session.start_listening("Hello")
        sockets[0].feed("{oops")
        sockets[0].feed({"type": "partial_transcript", "text": "Hello"})
        await _settle()
        state = session.state
        await session.close()
        return state

    assert asyncio.run(run()) == "listening"
    assert session.last_transcript == ""
    assert "Unparseable" in caplog.text


def test_stale_messages_ignored():
    """Messages tagged with an old generation never touch the buffers."""
    session, _, _ = _session()

    async def run():
        await session.start_listening("Hello")
        stale = session._generation - 1
        session.handle_message(stale, json.dumps({"type": "committed_transcript", "text": "ghost"}))
        final = session.final
        await session.close()
        return final

    assert asyncio.run(run()) == ""


# --- Token ---

def test_fetch_token_requires_api_key(monkeypatch):
    """No API key configured is a credential error."""
    monkeypatch.delenv("ELEVENLABS_API_KEY", raising=False)
    with pytest.raises(CredentialError, match="ELEVENLABS_API_KEY"):
        asyncio.run(fetch_token(url="https://token.test"))


@patch("scene_partner.asr.httpx.AsyncClient")
def test_fetch_token(mock_client):
    """The token comes from the JSON response; the key goes in a header."""
    response = MagicMock(status_code=200)
    response.json.return_value = {"token": "abc"}
    post = AsyncMock(return_value=response)
    mock_client.return_value.__aenter__.return_value.post = post

    assert asyncio.run(fetch_token(url="https://token.test", api_key="key")) == "abc"
    assert post.call_args.kwargs["headers"] == {"xi-api-key": "key"}


@patch("scene_partner.asr.httpx.AsyncClient")
def test_fetch_token_http_error(mock_client):
    """A non-200 reply is a credential error."""
    response = MagicMock(status_code=401, text="unauthorized")
    mock_client.return_value.__aenter__.return_value.post = AsyncMock(return_value=response)
    with pytest.raises(CredentialError, match="401"):
        asyncio.run(fetch_token(url="https://token.test", api_key="key"))


def test_non_string_text_skipped(caplog):
    """A message whose text is not a string never reaches the buffers."""
    session, sockets, _ = _session()

    async def run():
        await session.start_listening("Hello")
        sockets[0].feed({"type": "partial_transcript", "text": 123})
        sockets[0].feed({"type": "committed_transcript", "text": ["Hello"]})
        await _settle()
        assert session.partial == "" and session.final == ""
        return await session.stop_listening()

    assert asyncio.run(run()) is None
    assert "Malformed speech stream message" in caplog.text


def test_non_string_type_keeps_listening(caplog):
    """A message with a non-string type is skipped; the stream stays up."""
    session, sockets, _ = _session()

    async def run():
        await session.start_listening("Hello")
        sockets[0].feed({"type": 42, "text": "Hello"})
        sockets[0].feed({"type": "partial_transcript", "text": "Hello"})
        await _settle()
        state = session.state
        metrics = await session.stop_listening()
        return state, metrics

    state, metrics = asyncio.run(run())
    assert state == "listening"
    assert metrics.accuracy == 100
    assert "Malformed speech stream message" in caplog.text


class _SlowConfigureSocket(FakeSocket):
    async def send(self, message):
        await asyncio.sleep(0.05)
        await super().send(message)


def test_stop_while_configuring():
    """Stopping during the configure handshake leaves the session idle."""
    socket = _SlowConfigureSocket()
    session, sockets, mics = _session(socket=socket)

    async def run():
        start = asyncio.create_task(session.start_listening("Hello"))
        await asyncio.sleep(0.01)
        stopped = await session.stop_listening()
        await start
        return stopped

    assert asyncio.run(run()) is None
    assert session.state == "idle"
    assert not session.is_active
    assert session._sender is None and session._receiver is None
    assert socket.closed
    assert mics[0].closed
