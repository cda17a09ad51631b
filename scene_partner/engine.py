"""Rehearsal turn engine as a pure state machine.

transition(state, event, user_turns) returns the next state plus a tuple of
effects for the caller to carry out (speak a line, listen for a line, cancel
playback...). Nothing here touches audio or the network, so every turn rule
can be tested directly.

user_turns[i] is True when line i belongs to the actor; the partner reads
the rest.
"""

import logging
from dataclasses import dataclass, replace

from scene_partner.constants import COUNTDOWN_SECONDS

logger = logging.getLogger(__name__)

STATUSES = (
    "idle",
    "listening_for_cue",
    "countdown",
    "playing",
    "waiting_for_user",
    "paused",
    "completed",
)


@dataclass(frozen=True)
class SessionState:
    status: str = "idle"
    index: int = 0
    countdown: int = COUNTDOWN_SECONDS
    generation: int = 0   # bumped whenever in-flight line work becomes stale


# --- events ---

@dataclass(frozen=True)
class Begin:
    """Start listening for the spoken cue."""


@dataclass(frozen=True)
class CueHeard:
    """The cue word was heard."""


@dataclass(frozen=True)
class Skip:
    """Go straight to the countdown."""


@dataclass(frozen=True)
class Tick:
    """One countdown second elapsed."""


@dataclass(frozen=True)
class LineSpoken:
    """Partner playback of the dispatched line finished."""
    generation: int


@dataclass(frozen=True)
class LineConfirmed:
    """The actor finished their line (None generation: explicit acknowledgment)."""
    generation: int | None = None


@dataclass(frozen=True)
class TogglePause:
    pass


@dataclass(frozen=True)
class Reset:
    pass


# --- effects ---

@dataclass(frozen=True)
class StartCueListening:
    pass


@dataclass(frozen=True)
class StartCountdown:
    pass


@dataclass(frozen=True)
class SpeakLine:
    index: int
    generation: int


@dataclass(frozen=True)
class ListenForLine:
    index: int
    generation: int


@dataclass(frozen=True)
class CancelSpeech:
    pass


@dataclass(frozen=True)
class StopListening:
    pass


@dataclass(frozen=True)
class Finished:
    pass


def _dispatch(state: SessionState, user_turns) -> tuple[SessionState, tuple]:
    """Enter "playing" at state.index and hand the line to its speaker."""
    if state.index >= len(user_turns):
        return replace(state, status="completed"), (Finished(),)
    generation = state.generation + 1
    if user_turns[state.index]:
        next_state = replace(state, status="waiting_for_user", generation=generation)
        return next_state, (ListenForLine(state.index, generation),)
    next_state = replace(state, status="playing", generation=generation)
    return next_state, (SpeakLine(state.index, generation),)


def _advance(state: SessionState, user_turns) -> tuple[SessionState, tuple]:
    """Move past the current line, or finish on the last one."""
    if state.index >= len(user_turns) - 1:
        return replace(state, status="completed", generation=state.generation + 1), (Finished(),)
    return _dispatch(replace(state, index=state.index + 1), user_turns)


def transition(state: SessionState, event, user_turns) -> tuple[SessionState, tuple]:
    """Apply one event. Events that do not apply in a status are no-ops."""
    status = state.status

    if isinstance(event, Reset):
        next_state = SessionState(generation=state.generation + 1)
        return next_state, (CancelSpeech(), StopListening())

    if isinstance(event, Begin) and status == "idle":
        return replace(state, status="listening_for_cue"), (StartCueListening(),)

    if isinstance(event, (Skip, CueHeard)) and status in ("idle", "listening_for_cue"):
        effects = (StopListening(),) if status == "listening_for_cue" else ()
        next_state = replace(state, status="countdown", countdown=COUNTDOWN_SECONDS)
        return next_state, effects + (StartCountdown(),)

    if isinstance(event, Tick) and status == "countdown":
        remaining = state.countdown - 1
        if remaining > 0:
            return replace(state, countdown=remaining), ()
        return _dispatch(replace(state, countdown=0, index=0), user_turns)

    if isinstance(event, LineSpoken) and status == "playing":
        if event.generation != state.generation:
            return state, ()
        return _advance(state, user_turns)

    if isinstance(event, LineConfirmed) and status == "waiting_for_user":
        if event.generation is not None and event.generation != state.generation:
            return state, ()
        return _advance(state, user_turns)

    if isinstance(event, TogglePause):
        if status == "playing":
            next_state = replace(state, status="paused", generation=state.generation + 1)
            return next_state, (CancelSpeech(),)
        if status == "paused":
            return _dispatch(state, user_turns)

    logger.debug("Ignoring %s in %s", type(event).__name__, status)
    return state, ()
