"""Voice selection for the scene partner and cast sidecar handling."""

import dataclasses
import hashlib
import json
import logging
import os

from scene_partner.constants import DEFAULT_VOICE
from scene_partner.models import ASSIGNMENTS, Character

logger = logging.getLogger(__name__)

# Hardcoded English voice pool (avoids network call at startup)
VOICE_POOL = [
    "en-US-AriaNeural",
    "en-US-DavisNeural",
    "en-US-TonyNeural",
    "en-US-JennyNeural",
    "en-US-SaraNeural",
    "en-GB-SoniaNeural",
    "en-GB-ThomasNeural",
    "en-AU-NatashaNeural",
    "en-AU-WilliamNeural",
    "en-CA-ClaraNeural",
    "en-CA-LiamNeural",
    "en-IN-NeerjaNeural",
    "en-IN-PrabhatNeural",
    "en-IE-EmilyNeural",
]

# Pre-registered voice keys offered when assigning a partner voice
REGISTERED_VOICES = {
    "voice-1": "en-US-RogerNeural",    # deep male
    "voice-2": "en-US-AriaNeural",     # clear female
    "voice-3": "en-US-DavisNeural",    # warm male
    "voice-4": "en-US-JennyNeural",    # expressive female
    "voice-5": "en-GB-RyanNeural",     # British male
    "voice-6": "en-GB-MaisieNeural",   # young female
}

def _hash_voice(key: str, pool: list[str]) -> str:
    """Deterministic voice assignment via sha256 hash."""
    h = hashlib.sha256(key.encode()).hexdigest()
    idx = int(h, 16) % len(pool)
    return pool[idx]


def resolve_voice(selector: str | None) -> str:
    """Map a voice selector to a concrete synthesis voice.

    Priority: registered key → full voice name → hash fallback. The same
    selector always resolves to the same voice.
    """
    if not selector:
        return DEFAULT_VOICE
    if selector in REGISTERED_VOICES:
        return REGISTERED_VOICES[selector]
    if "Neural" in selector:
        return selector
    return _hash_voice(selector.lower(), VOICE_POOL)


def partner_selector(character: Character | None) -> str | None:
    """Selector for a character: its assigned voice, else its name."""
    if character is None:
        return None
    return character.voice or character.name


def load_cast(script_path: str) -> dict:
    """Load .cast.json sidecar file if it exists.

    Returns cast dict or empty dict if not found or malformed.
    """
    base = os.path.splitext(script_path)[0]
    cast_path = base + ".cast.json"
    if not os.path.exists(cast_path):
        return {}
    try:
        with open(cast_path) as f:
            data = json.load(f)
    except json.JSONDecodeError:
        logger.warning("Malformed cast file: %s, leaving roles unassigned", cast_path)
        return {}
    if not isinstance(data, dict):
        logger.warning("Cast file is not a JSON object: %s", cast_path)
        return {}
    return data


def _cast_entries(cast: dict) -> dict:
    """Well-formed entries of cast data, keyed by name as written."""
    entries = cast.get("cast", {})
    if not isinstance(entries, dict):
        logger.warning("Cast data 'cast' is not an object, ignoring it")
        return {}
    result = {}
    for name, info in entries.items():
        if not isinstance(info, dict):
            logger.warning("Cast entry for %s is not an object, skipping", name)
            continue
        result[name] = info
    return result


def _resolve_alias(name: str, cast: dict) -> str:
    """Resolve a character name through alias mappings in cast data."""
    for primary_name, info in _cast_entries(cast).items():
        aliases = info.get("aliases", [])
        if not isinstance(aliases, list):
            continue
        if name.lower() in [a.lower() for a in aliases if isinstance(a, str)]:
            return primary_name.lower()
    return name.lower()


def apply_cast(characters: list[Character], cast: dict | None = None) -> list[Character]:
    """Return characters with roles and voices taken from cast data.

    Characters missing from the cast keep their current assignment. Unknown
    roles in the cast are ignored with a warning.
    """
    if not cast:
        return list(characters)

    entries = {name.lower(): info for name, info in _cast_entries(cast).items()}
    result = []
    for char in characters:
        info = entries.get(_resolve_alias(char.name, cast))
        if info is None:
            result.append(char)
            continue
        role = info.get("role", char.assignment)
        if role not in ASSIGNMENTS:
            logger.warning("Unknown role %r for %s in cast file", role, char.name)
            role = char.assignment
        result.append(dataclasses.replace(
            char,
            assignment=role,
            voice=info.get("voice", char.voice),
        ))
    return result


def rehearsal_problems(characters) -> list[str]:
    """Reasons a cast is not ready to rehearse (empty list when ready).

    A rehearsal wants a user role and at least one AI role with a voice.
    Several user roles are allowed.
    """
    problems = []
    if not any(c.assignment == "user" for c in characters):
        problems.append("No character is assigned to you.")
    if not any(c.assignment == "ai" for c in characters):
        problems.append("No character is assigned to the AI partner.")
    elif not any(c.assignment == "ai" and c.voice for c in characters):
        problems.append("No AI character has a voice selected.")
    return problems
