"""Parse plain-text scene scripts into characters and ordered lines."""

import os
import re

from scene_partner.models import Character, Line

NARRATOR_ID = "narrator"
NARRATOR_NAME = "NARRATOR"

# Inline dialogue: ALEX: I know. I'm sorry.
_INLINE_RE = re.compile(r"^([A-Z][A-Z .'\-]*[A-Z.])\s*:\s*(.+)$")

# Speaker cue on its own line, dialogue follows on the next line(s)
_CUE_RE = re.compile(r"^([A-Z][A-Z .'\-]*[A-Z.]|[A-Z])$")

# Scene headings: INT. OFFICE - DAY / EXT. PARK / ACT ONE / SCENE 2
_HEADING_RE = re.compile(r"^(?:INT|EXT|INT\./EXT|I/E)[.\s]|^(?:ACT|SCENE)\b", re.IGNORECASE)

# Stage direction alone on a line: (beat)
_PAREN_RE = re.compile(r"^\((.+)\)$")

# Extensions stripped from uploaded filenames
_TITLE_EXT_RE = re.compile(r"\.(pdf|txt|fountain)$", re.IGNORECASE)


def title_from_path(path: str) -> str:
    """Derive a script title from its filename.

    "/scripts/The Audition.txt" → "The Audition"
    """
    return _TITLE_EXT_RE.sub("", os.path.basename(path))


def character_id(name: str) -> str:
    """Stable character id: "MARY ANNE" → "char-mary-anne"."""
    return "char-" + re.sub(r"\s+", "-", name.strip().lower())


def _placeholder_cast() -> list[Character]:
    return [
        Character(id="char-1", name="CHARACTER 1"),
        Character(id="char-2", name="CHARACTER 2"),
    ]


def parse_script_text(text: str) -> tuple[list[Character], list[Line]]:
    """Parse script text into (characters, lines).

    Dialogue is written either "NAME: line" or as a NAME cue line followed by
    the dialogue. Headings, parentheticals and any other prose become
    non-dialogue lines spoken by the narrator. Only dialogue counts toward a
    character's line count.

    Scripts with no dialogue at all yield two placeholder characters and no
    lines, so they can still be assigned and edited.
    """
    entries = []       # (kind, speaker_name, text)
    cue = None         # speaker announced on its own line
    in_speech = False  # continuation lines append to the last dialogue

    for raw_line in text.splitlines():
        stripped = raw_line.strip()
        if not stripped:
            cue = None
            in_speech = False
            continue

        if _HEADING_RE.match(stripped):
            entries.append(("heading", NARRATOR_NAME, stripped))
            cue = None
            in_speech = False
            continue

        paren = _PAREN_RE.match(stripped)
        if paren:
            entries.append(("parenthetical", NARRATOR_NAME, paren.group(1).strip()))
            continue

        inline = _INLINE_RE.match(stripped)
        if inline:
            entries.append(("dialogue", inline.group(1).strip(), inline.group(2).strip()))
            cue = inline.group(1).strip()
            in_speech = True
            continue

        if _CUE_RE.match(stripped):
            cue = stripped
            in_speech = False
            continue

        if cue and in_speech and entries and entries[-1][0] == "dialogue":
            kind, speaker, previous = entries[-1]
            entries[-1] = (kind, speaker, f"{previous} {stripped}")
        elif cue:
            entries.append(("dialogue", cue, stripped))
            in_speech = True
        else:
            entries.append(("action", NARRATOR_NAME, stripped))

    if not any(kind == "dialogue" for kind, _, _ in entries):
        return _placeholder_cast(), []

    counts = {}
    for kind, speaker, _ in entries:
        if kind == "dialogue":
            counts[speaker] = counts.get(speaker, 0) + 1

    characters = [
        Character(id=character_id(name), name=name, line_count=count)
        for name, count in counts.items()
    ]

    lines = []
    for order, (kind, speaker, line_text) in enumerate(entries, start=1):
        speaker_id = NARRATOR_ID if speaker == NARRATOR_NAME else character_id(speaker)
        lines.append(Line(
            id=f"line-{order}",
            speaker_id=speaker_id,
            speaker_name=speaker,
            text=line_text,
            kind=kind,
            order=order,
        ))

    return characters, lines
