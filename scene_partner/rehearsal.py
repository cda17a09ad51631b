"""Runs a rehearsal: feeds engine events, carries out engine effects."""

import asyncio
import logging
from typing import Callable

from scene_partner.asr import SpeechSession
from scene_partner.capture import MicrophoneCapture
from scene_partner.constants import CUE_WORD, TICK_SECONDS
from scene_partner.engine import (
    Begin,
    CancelSpeech,
    CueHeard,
    Finished,
    LineConfirmed,
    LineSpoken,
    ListenForLine,
    Reset,
    SessionState,
    Skip,
    SpeakLine,
    StartCountdown,
    StartCueListening,
    StopListening,
    Tick,
    TogglePause,
    transition,
)
from scene_partner.errors import PlaybackError, RehearsalError
from scene_partner.models import Line, Metrics, Script, SessionSummary
from scene_partner.scoring import normalize, score, summarize
from scene_partner.tts import Synthesizer
from scene_partner.voices import partner_selector

logger = logging.getLogger(__name__)


class Rehearsal:
    """One actor rehearsing one script.

    Owns the session state and the per-line metrics. At most one partner
    line plays and at most one speech session runs at any time; every
    speech operation goes through a lock so starts and stops apply in the
    order they were requested.

    With scoring on, the actor's lines are listened to and scored when the
    actor confirms the line (or, with auto_confirm, as soon as a committed
    segment covers every scripted word). With scoring off, confirm_line()
    simply moves on.
    """

    def __init__(
        self,
        script: Script,
        synthesizer: Synthesizer | None = None,
        speech: SpeechSession | None = None,
        scoring: bool = True,
        auto_confirm: bool = False,
        read_directions: bool = False,
        cue_word: str = CUE_WORD,
        tick_seconds: float = TICK_SECONDS,
        on_state: Callable[[SessionState], None] | None = None,
        on_line: Callable[[Line, bool], None] | None = None,
        on_partial: Callable[[str], None] | None = None,
        on_metrics: Callable[[Line, Metrics], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ):
        self.script = script
        if read_directions:
            self.lines = tuple(script.lines)
        else:
            self.lines = tuple(line for line in script.lines if line.kind == "dialogue")
        self.user_turns = tuple(self._is_user_line(line) for line in self.lines)

        self.synthesizer = synthesizer or Synthesizer()
        self.speech = speech or SpeechSession(capture_factory=self._open_capture)
        self.speech.on_partial = self._heard_partial
        self.speech.on_committed = self._heard_committed
        self.speech.on_error = self._report_error

        self.scoring = scoring
        self.auto_confirm = auto_confirm
        self.cue_word = cue_word.lower()
        self.tick_seconds = tick_seconds
        self.on_state = on_state
        self.on_line = on_line
        self.on_partial = on_partial
        self.on_metrics = on_metrics
        self.on_error = on_error

        self.state = SessionState()
        self.metrics: list[Metrics] = []
        self._speech_lock = asyncio.Lock()
        self._speak_task: asyncio.Task | None = None
        self._countdown_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._finished = asyncio.Event()

    @property
    def status(self) -> str:
        return self.state.status

    @property
    def current_line(self) -> Line | None:
        if 0 <= self.state.index < len(self.lines):
            return self.lines[self.state.index]
        return None

    def summary(self) -> SessionSummary:
        return summarize(self.metrics)

    def _is_user_line(self, line: Line) -> bool:
        """The partner reads its own characters and the directions; the actor the rest."""
        if line.kind != "dialogue":
            return False
        return self.script.assignment_of(line) != "ai"

    def _open_capture(self) -> MicrophoneCapture:
        # Half-duplex: the mic ignores the partner's own voice.
        return MicrophoneCapture(is_partner_speaking=lambda: self.synthesizer.is_speaking)

    # --- controls ---

    def begin(self) -> None:
        """Listen for the cue before counting down."""
        self.dispatch(Begin())

    def skip(self) -> None:
        """Start the countdown without waiting for the cue."""
        self.dispatch(Skip())

    def toggle_pause(self) -> None:
        self.dispatch(TogglePause())

    def reset(self) -> None:
        """Back to idle at line one; the collected metrics are dropped."""
        self.metrics = []
        self._finished.clear()
        self.dispatch(Reset())

    async def confirm_line(self) -> Metrics | None:
        """The actor is done with their line. Returns its metrics, if scored."""
        if self.state.status != "waiting_for_user":
            return None
        generation = self.state.generation
        line = self.current_line

        metrics = None
        if self.scoring:
            async with self._speech_lock:
                metrics = await self.speech.stop_listening()
        if generation != self.state.generation:
            return None

        if metrics is not None:
            self.metrics.append(metrics)
            if self.on_metrics is not None:
                self.on_metrics(line, metrics)
        self.dispatch(LineConfirmed(generation))
        return metrics

    async def run(self, cue: bool = False) -> SessionSummary:
        """Play the scene to the end and return the session summary."""
        if cue:
            self.begin()
        else:
            self.skip()
        await self.wait_finished()
        return self.summary()

    async def wait_finished(self) -> None:
        await self._finished.wait()

    async def close(self) -> None:
        """Stop playback and listening and cancel all pending work."""
        tasks = [t for t in (self._speak_task, self._countdown_task) if t is not None]
        tasks.extend(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.synthesizer.stop()
        async with self._speech_lock:
            await self.speech.close()

    # --- engine plumbing ---

    def dispatch(self, event) -> None:
        previous = self.state
        self.state, effects = transition(self.state, event, self.user_turns)
        if self.state != previous:
            logger.debug("%s: %s → %s (line %d)", type(event).__name__,
                         previous.status, self.state.status, self.state.index + 1)
            if self.on_state is not None:
                self.on_state(self.state)
        if self.state.status != "countdown":
            self._cancel_countdown()
        for effect in effects:
            self._perform(effect)

    def _perform(self, effect) -> None:
        if isinstance(effect, SpeakLine):
            self._cancel_speech()
            line = self.lines[effect.index]
            self._announce(line, False)
            self._speak_task = asyncio.create_task(self._speak(line, effect.generation))
        elif isinstance(effect, ListenForLine):
            line = self.lines[effect.index]
            self._announce(line, True)
            if self.scoring:
                self._spawn(self._listen(line.text, effect.generation))
        elif isinstance(effect, CancelSpeech):
            self._cancel_speech()
        elif isinstance(effect, StopListening):
            self._spawn(self._close_speech())
        elif isinstance(effect, StartCueListening):
            self._spawn(self._listen(self.cue_word, self.state.generation))
        elif isinstance(effect, StartCountdown):
            self._cancel_countdown()
            self._countdown_task = asyncio.create_task(self._countdown())
        elif isinstance(effect, Finished):
            logger.info("Scene complete: %d scored lines", len(self.metrics))
            self._finished.set()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _announce(self, line: Line, is_user: bool) -> None:
        if self.on_line is not None:
            self.on_line(line, is_user)

    def _report_error(self, message: str) -> None:
        if self.on_error is not None:
            self.on_error(message)

    # --- effect workers ---

    async def _speak(self, line: Line, generation: int) -> None:
        selector = partner_selector(self.script.character(line.speaker_name))
        try:
            await self.synthesizer.speak(line.text, selector)
        except PlaybackError as e:
            # The scene keeps going; the actor can read the line off the page.
            logger.warning("Partner line %d failed: %s", line.order, e)
            self._report_error(str(e))
        self.dispatch(LineSpoken(generation))

    def _cancel_speech(self) -> None:
        task, self._speak_task = self._speak_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self.synthesizer.stop()

    async def _listen(self, expected_text: str, generation: int) -> None:
        async with self._speech_lock:
            if generation != self.state.generation:
                return
            try:
                await self.speech.start_listening(expected_text)
            except RehearsalError as e:
                logger.warning("Could not start listening: %s", e)

    async def _close_speech(self) -> None:
        async with self._speech_lock:
            await self.speech.close()

    async def _countdown(self) -> None:
        while self.state.status == "countdown":
            await asyncio.sleep(self.tick_seconds)
            self.dispatch(Tick())

    def _cancel_countdown(self) -> None:
        task, self._countdown_task = self._countdown_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # --- speech observers ---

    def _heard_partial(self, text: str) -> None:
        if self.on_partial is not None:
            self.on_partial(text)
        self._check_cue(text)

    def _heard_committed(self, text: str) -> None:
        self._check_cue(text)
        if not self.auto_confirm or self.state.status != "waiting_for_user":
            return
        line = self.current_line
        if line is not None and score(line.text, self.speech.transcript).word_match_rate == 100:
            self._spawn(self.confirm_line())

    def _check_cue(self, text: str) -> None:
        if self.state.status == "listening_for_cue" and self.cue_word in normalize(text):
            logger.info("Cue heard")
            self.dispatch(CueHeard())
