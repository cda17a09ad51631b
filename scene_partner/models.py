"""Data models for scripts, characters and rehearsal scores."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

LINE_KINDS = ("dialogue", "action", "heading", "parenthetical")
ASSIGNMENTS = ("user", "ai", "unassigned")
SCRIPT_STATUSES = ("uploaded", "parsed", "assigned", "ready")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Line:
    id: str
    speaker_id: str
    speaker_name: str
    text: str
    kind: str = "dialogue"   # one of LINE_KINDS
    order: int = 1           # 1-based playback position


@dataclass(frozen=True)
class Character:
    id: str
    name: str
    assignment: str = "unassigned"   # "user", "ai" or "unassigned"
    line_count: int = 0
    voice: str | None = None         # voice selector, see voices.resolve_voice()


@dataclass(frozen=True)
class Script:
    id: str
    title: str
    raw_text: str = ""
    characters: tuple[Character, ...] = ()
    lines: tuple[Line, ...] = ()
    status: str = "uploaded"   # one of SCRIPT_STATUSES
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def character(self, name: str) -> Character | None:
        """Look up a character by name, case-insensitively."""
        for char in self.characters:
            if char.name.lower() == name.lower():
                return char
        return None

    def assignment_of(self, line: Line) -> str:
        """Role of the character speaking a line ("unassigned" if unknown)."""
        for char in self.characters:
            if char.id == line.speaker_id:
                return char.assignment
        return "unassigned"


@dataclass(frozen=True)
class Metrics:
    """Score of one attempt at one line."""

    accuracy: int
    word_match_rate: int
    expected_words: int
    spoken_words: int
    matched_words: int
    missed_words: tuple[str, ...]
    extra_words: tuple[str, ...]
    elapsed_ms: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["missed_words"] = list(self.missed_words)
        data["extra_words"] = list(self.extra_words)
        return data


@dataclass(frozen=True)
class SessionSummary:
    lines_completed: int = 0
    average_accuracy: int = 0
    average_word_match: int = 0
    total_elapsed_ms: int = 0
