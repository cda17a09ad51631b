"""Word-level scoring of a spoken line against the scripted line.

Matching is set-based: a scripted word counts as delivered when it appears
anywhere in the transcript, regardless of order. Extra words lower accuracy
but not the word match rate, so the two numbers separate "forgot words"
from "said too much".
"""

import logging
import math
import re

from scene_partner.constants import FAIR_SCORE, FEEDBACK_MISSED_SHOWN, GOOD_SCORE
from scene_partner.models import Metrics, SessionSummary

logger = logging.getLogger(__name__)

# Anything that is not a letter, digit, whitespace or apostrophe
_STRIP_RE = re.compile(r"[^\w\s']|_")


def normalize(text) -> list[str]:
    """Lowercase, strip punctuation (keeping apostrophes), split into words.

    "Don't! Stop." → ["don't", "stop"]
    """
    if not isinstance(text, str):
        return []
    return _STRIP_RE.sub("", text.lower()).split()


def _percent(part: int, whole: int) -> int:
    """Half-up rounded percentage; 0 when whole is 0."""
    if whole <= 0:
        return 0
    return int(math.floor(100 * part / whole + 0.5))


def _unique(words: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(words))


def score(expected: str, spoken: str, elapsed_ms: int = 0) -> Metrics:
    """Compare the scripted line with what was heard.

    Counts are raw token counts; missed/extra word lists are deduplicated.
    Never raises: bad input scores as empty text.
    """
    expected_words = normalize(expected)
    spoken_words = normalize(spoken)
    expected_set = set(expected_words)
    spoken_set = set(spoken_words)

    matched = [w for w in expected_words if w in spoken_set]
    missed = [w for w in expected_words if w not in spoken_set]
    extra = [w for w in spoken_words if w not in expected_set]

    try:
        elapsed = max(int(elapsed_ms or 0), 0)
    except (TypeError, ValueError):
        elapsed = 0

    metrics = Metrics(
        accuracy=_percent(len(matched), len(expected_words) + len(extra)),
        word_match_rate=_percent(len(matched), len(expected_words)),
        expected_words=len(expected_words),
        spoken_words=len(spoken_words),
        matched_words=len(matched),
        missed_words=_unique(missed),
        extra_words=_unique(extra),
        elapsed_ms=elapsed,
    )
    logger.debug("Scored line: %d%% accuracy, %d%% match", metrics.accuracy, metrics.word_match_rate)
    return metrics


def summarize(metrics_list: list[Metrics]) -> SessionSummary:
    """Aggregate per-line metrics into a session summary."""
    if not metrics_list:
        return SessionSummary()
    count = len(metrics_list)
    return SessionSummary(
        lines_completed=count,
        average_accuracy=int(math.floor(sum(m.accuracy for m in metrics_list) / count + 0.5)),
        average_word_match=int(math.floor(sum(m.word_match_rate for m in metrics_list) / count + 0.5)),
        total_elapsed_ms=sum(m.elapsed_ms for m in metrics_list),
    )


def grade(value: int) -> str:
    """Bucket a 0-100 score into "good", "fair" or "poor"."""
    if value >= GOOD_SCORE:
        return "good"
    if value >= FAIR_SCORE:
        return "fair"
    return "poor"


def feedback(metrics: Metrics) -> str:
    """One-line note on a scored attempt."""
    if not metrics.missed_words and metrics.accuracy >= GOOD_SCORE:
        return "Great delivery!"
    if metrics.missed_words:
        shown = ", ".join(metrics.missed_words[:FEEDBACK_MISSED_SHOWN])
        if len(metrics.missed_words) > FEEDBACK_MISSED_SHOWN:
            shown += "..."
        return f"Missed: {shown}"
    if metrics.extra_words:
        return f"Extra words: {', '.join(metrics.extra_words[:FEEDBACK_MISSED_SHOWN])}"
    return "Nothing to score."
