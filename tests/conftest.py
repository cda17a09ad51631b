"""Shared fixtures for scene partner tests."""

import asyncio
import json

import pytest

from scene_partner.models import Character, Line, Script

SCENE_TEXT = """INT. COFFEE SHOP - DAY

SARAH: I didn't think you'd come.
JOHN: I almost didn't.
(beat)
SARAH: Why did you?
"""


class FakeSocket:
    """Stands in for a websocket connection.

    Messages pushed with feed() come out of async iteration; finish() ends
    the iteration the way a server close does.
    """

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, message):
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(message))

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)

    def feed(self, message):
        self._incoming.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    def finish(self):
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


class FakeMic:
    """Stands in for MicrophoneCapture."""

    def __init__(self, fail=None):
        self.queue = asyncio.Queue()
        self.opened = False
        self.closed = False
        self._fail = fail

    async def open(self):
        if self._fail is not None:
            raise self._fail
        self.opened = True

    def close(self):
        self.closed = True


class FakeSynthesizer:
    """Records spoken lines.

    Playback finishes immediately, or with hold=True only once finish is set.
    """

    def __init__(self, fail=None, hold=False):
        self.spoken = []
        self.stops = 0
        self.is_speaking = False
        self.finish = asyncio.Event()
        self._fail = fail
        self._hold = hold

    async def speak(self, text, selector=None):
        self.spoken.append((text, selector))
        if self._fail is not None:
            raise self._fail
        if self._hold:
            self.is_speaking = True
            try:
                await self.finish.wait()
            finally:
                self.is_speaking = False
        await asyncio.sleep(0)

    def stop(self):
        self.stops += 1


class FakeSpeech:
    """Stands in for SpeechSession: returns a preset transcript's metrics."""

    def __init__(self, metrics=None):
        self.metrics = list(metrics or [])
        self.started = []
        self.stopped = 0
        self.closed = 0
        self.transcript = ""
        self.on_partial = None
        self.on_committed = None
        self.on_error = None

    async def start_listening(self, expected_text):
        self.started.append(expected_text)

    async def stop_listening(self):
        self.stopped += 1
        return self.metrics.pop(0) if self.metrics else None

    async def close(self):
        self.closed += 1


@pytest.fixture
def scene_text():
    return SCENE_TEXT


@pytest.fixture
def sample_script():
    """Two-character scene: SARAH is the actor, JOHN the partner."""
    return Script(
        id="script-1",
        title="Coffee",
        characters=(
            Character(id="char-sarah", name="SARAH", assignment="user", line_count=2),
            Character(id="char-john", name="JOHN", assignment="ai", line_count=1, voice="voice-3"),
        ),
        lines=(
            Line(id="line-1", speaker_id="char-sarah", speaker_name="SARAH",
                 text="I didn't think you'd come.", order=1),
            Line(id="line-2", speaker_id="char-john", speaker_name="JOHN",
                 text="I almost didn't.", order=2),
            Line(id="line-3", speaker_id="narrator", speaker_name="NARRATOR",
                 text="beat", kind="parenthetical", order=3),
            Line(id="line-4", speaker_id="char-sarah", speaker_name="SARAH",
                 text="Why did you?", order=4),
        ),
        status="ready",
    )
