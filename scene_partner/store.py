"""In-memory script store with copy-on-write updates."""

import dataclasses
import itertools
import logging
import time
from datetime import datetime, timezone

from scene_partner.models import ASSIGNMENTS, Script
from scene_partner.parser import parse_script_text
from scene_partner.voices import rehearsal_problems

logger = logging.getLogger(__name__)


class ScriptStore:
    """Holds the scripts of one user session.

    Records are frozen dataclasses; update() swaps in a new record and never
    mutates the old one, so a Script handed to a running rehearsal stays
    stable while the store changes.
    """

    def __init__(self, scripts: list[Script] | None = None):
        self._scripts: dict[str, Script] = {}
        self._counter = itertools.count(1)
        for script in scripts or []:
            self.add(script)

    def __len__(self) -> int:
        return len(self._scripts)

    def __contains__(self, script_id: str) -> bool:
        return script_id in self._scripts

    def add(self, script: Script) -> Script:
        if script.id in self._scripts:
            raise ValueError(f"Script already exists: {script.id}")
        self._scripts[script.id] = script
        logger.debug("Added script %s (%d lines)", script.id, len(script.lines))
        return script

    def add_text(self, title: str, text: str) -> Script:
        """Parse raw script text and store it under a fresh id."""
        characters, lines = parse_script_text(text)
        script_id = f"script-{int(time.time() * 1000)}-{next(self._counter)}"
        script = Script(
            id=script_id,
            title=title,
            raw_text=text,
            characters=tuple(characters),
            lines=tuple(lines),
            status="parsed" if lines else "uploaded",
        )
        return self.add(script)

    def remove(self, script_id: str) -> bool:
        """Delete a script. Returns False if it was not stored."""
        return self._scripts.pop(script_id, None) is not None

    def get(self, script_id: str) -> Script | None:
        return self._scripts.get(script_id)

    def all_scripts(self) -> list[Script]:
        """All scripts, most recently created first."""
        return sorted(self._scripts.values(), key=lambda s: s.created_at, reverse=True)

    def update(self, script_id: str, **changes) -> Script:
        """Replace a script with a modified copy and return the copy."""
        current = self._scripts.get(script_id)
        if current is None:
            raise KeyError(script_id)
        if "id" in changes and changes["id"] != script_id:
            raise ValueError("Script id cannot be changed")
        changes.setdefault("updated_at", datetime.now(timezone.utc))
        updated = dataclasses.replace(current, **changes)
        self._scripts[script_id] = updated
        return updated

    def assign(
        self,
        script_id: str,
        character_name: str,
        assignment: str,
        voice: str | None = None,
    ) -> Script:
        """Set a character's role (and optionally voice) via update()."""
        if assignment not in ASSIGNMENTS:
            raise ValueError(f"Invalid assignment: {assignment}")
        script = self._scripts.get(script_id)
        if script is None:
            raise KeyError(script_id)
        if script.character(character_name) is None:
            raise KeyError(character_name)

        characters = []
        for char in script.characters:
            if char.name.lower() == character_name.lower():
                char = dataclasses.replace(
                    char,
                    assignment=assignment,
                    voice=voice if voice is not None else char.voice,
                )
            characters.append(char)

        status = script.status
        if status != "uploaded":
            if not rehearsal_problems(characters):
                status = "ready"
            elif any(c.assignment != "unassigned" for c in characters):
                status = "assigned"
            else:
                status = "parsed"
        return self.update(script_id, characters=tuple(characters), status=status)
