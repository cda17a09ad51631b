"""CLI interface with subcommand routing."""

import argparse
import asyncio
import json
import logging
import os
import sys

from scene_partner.constants import VERSION
from scene_partner.errors import RehearsalError
from scene_partner.models import Line, Metrics, Script
from scene_partner.parser import title_from_path
from scene_partner.rehearsal import Rehearsal
from scene_partner.scoring import feedback, grade, score
from scene_partner.store import ScriptStore
from scene_partner.voices import (
    REGISTERED_VOICES,
    VOICE_POOL,
    apply_cast,
    load_cast,
    rehearsal_problems,
    resolve_voice,
)

STATUS_TEXT = {
    "idle": "Ready to begin",
    "listening_for_cue": 'Listening for "Action!"... (Enter to start now)',
    "countdown": "Starting in {countdown}...",
    "playing": "Scene in progress",
    "waiting_for_user": "Your line",
    "paused": "Paused",
    "completed": "Scene complete!",
}


def _load_script(file_path: str, store: ScriptStore) -> Script:
    """Read, parse and cast a script file into the store."""
    if not os.path.exists(file_path):
        print(f"Error: File not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)

    with open(file_path) as f:
        text = f.read()

    if not text.strip():
        print(f"Error: File is empty: {file_path}", file=sys.stderr)
        raise SystemExit(1)

    script = store.add_text(title_from_path(file_path), text)
    cast = load_cast(file_path)
    if cast:
        script = store.update(script.id, characters=tuple(apply_cast(list(script.characters), cast)))
    return script


def _assign(store: ScriptStore, script: Script, name: str, role: str, voice: str | None = None) -> Script:
    if script.character(name) is None:
        names = ", ".join(c.name for c in script.characters)
        print(f"Error: No character named '{name}'. Characters: {names}", file=sys.stderr)
        raise SystemExit(1)
    return store.assign(script.id, name, role, voice=voice)


def _print_metrics(metrics: Metrics) -> None:
    print(f"  Accuracy:   {metrics.accuracy}% ({grade(metrics.accuracy)})")
    print(f"  Word match: {metrics.word_match_rate}% "
          f"({metrics.matched_words}/{metrics.expected_words} words)")
    print(f"  Time:       {metrics.elapsed_ms / 1000:.1f}s")
    print(f"  {feedback(metrics)}")


def cmd_score(args):
    """Score a spoken line against the scripted one."""
    metrics = score(args.expected, args.spoken, args.elapsed_ms)
    if args.json:
        print(json.dumps(metrics.to_dict(), indent=2))
        return
    _print_metrics(metrics)
    if metrics.missed_words:
        print(f"  Missed:     {', '.join(metrics.missed_words)}")
    if metrics.extra_words:
        print(f"  Extra:      {', '.join(metrics.extra_words)}")


def cmd_parse(args):
    """Show the characters and lines found in a script."""
    store = ScriptStore()
    script = _load_script(args.file, store)

    print(f"Script: {script.title} ({script.status})")
    print("Characters:")
    for char in script.characters:
        voice = f" → {resolve_voice(char.voice)}" if char.voice else ""
        print(f"  {char.name:<15} {char.line_count:>3} lines  [{char.assignment}]{voice}")
    if not script.lines:
        print("No dialogue found.")
        return
    print("Lines:")
    for line in script.lines:
        if line.kind == "dialogue":
            print(f"  {line.order:>3}. {line.speaker_name}: {line.text}")
        else:
            print(f"  {line.order:>3}. ({line.kind}) {line.text}")


def cmd_voices(args):
    """List available voices."""
    if args.resolve:
        print(f"{args.resolve} → {resolve_voice(args.resolve)}")
        return
    filter_str = args.filter.lower() if args.filter else None
    registered = {k: v for k, v in REGISTERED_VOICES.items()
                  if not filter_str or filter_str in k or filter_str in v.lower()}
    pool = [v for v in VOICE_POOL if not filter_str or filter_str in v.lower()]
    if not registered and not pool:
        print("No matching voices found.")
        return
    if registered:
        print("Registered voices:")
        for key, voice in registered.items():
            print(f"  {key:<8} → {voice}")
    if pool:
        print("Voice pool (hash fallback):")
        for v in pool:
            print(f"  {v}")


def _print_state(state) -> None:
    print(f"[{STATUS_TEXT[state.status].format(countdown=state.countdown)}]")


def _print_line(line: Line, is_user: bool) -> None:
    if is_user:
        print(f"\n  YOU ({line.speaker_name}): {line.text}")
        print("  (say your line, then press Enter)")
    elif line.kind == "dialogue":
        print(f"\n  {line.speaker_name}: {line.text}")
    else:
        print(f"\n  ({line.text})")


def _print_line_metrics(line: Line, metrics: Metrics) -> None:
    _print_metrics(metrics)


async def _rehearse(script: Script, args) -> Rehearsal:
    rehearsal = Rehearsal(
        script,
        scoring=not args.manual,
        auto_confirm=args.auto,
        read_directions=args.directions,
        on_state=_print_state,
        on_line=_print_line,
        on_metrics=_print_line_metrics,
        on_error=lambda message: print(f"Error: {message}", file=sys.stderr),
    )
    print("Enter: confirm line | p: pause/resume | r: restart | q: quit")
    runner = asyncio.create_task(rehearsal.run(cue=args.cue))
    try:
        while True:
            if runner.done():
                print("Press Enter to finish.")
            command = await asyncio.to_thread(sys.stdin.readline)
            if not command or runner.done():
                break
            command = command.strip().lower()
            if command == "q":
                break
            elif command == "p":
                rehearsal.toggle_pause()
            elif command == "r":
                rehearsal.reset()
                rehearsal.skip()
            elif rehearsal.status == "listening_for_cue":
                rehearsal.skip()
            elif rehearsal.status == "waiting_for_user":
                await rehearsal.confirm_line()
    finally:
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)
        await rehearsal.close()
    return rehearsal


def cmd_rehearse(args):
    """Rehearse a script against the AI scene partner."""
    store = ScriptStore()
    script = _load_script(args.file, store)
    if not script.lines:
        print(f"Error: Could not parse any dialogue from: {args.file}", file=sys.stderr)
        raise SystemExit(1)

    if args.user:
        script = _assign(store, script, args.user, "user")
    if args.partner:
        script = _assign(store, script, args.partner, "ai", voice=args.voice)

    for problem in rehearsal_problems(script.characters):
        print(f"Warning: {problem}", file=sys.stderr)

    try:
        rehearsal = asyncio.run(_rehearse(script, args))
    except RehearsalError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    except KeyboardInterrupt:
        print("\nStopped.")
        return

    summary = rehearsal.summary()
    print("Session:")
    print(f"  Lines scored:     {summary.lines_completed}")
    if summary.lines_completed:
        print(f"  Average accuracy: {summary.average_accuracy}%")
        print(f"  Average match:    {summary.average_word_match}%")
        print(f"  Total time:       {round(summary.total_elapsed_ms / 1000)}s")


def main(argv=None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="scene-partner",
        description="Scene Partner: rehearse scripted dialogue against an AI-voiced partner",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # score
    score_parser = subparsers.add_parser("score", help="Score a spoken line against the script")
    score_parser.add_argument("expected", help="The scripted line")
    score_parser.add_argument("spoken", help="What was said")
    score_parser.add_argument("--elapsed-ms", type=int, default=0, help="Time taken in ms")
    score_parser.add_argument("--json", action="store_true", help="Print metrics as JSON")
    score_parser.set_defaults(func=cmd_score)

    # parse
    parse_parser = subparsers.add_parser("parse", help="Show characters and lines of a script")
    parse_parser.add_argument("file", help="Path to the script text file")
    parse_parser.set_defaults(func=cmd_parse)

    # voices
    voices_parser = subparsers.add_parser("voices", help="List available voices")
    voices_parser.add_argument("--filter", help="Filter voices by substring")
    voices_parser.add_argument("--resolve", metavar="SELECTOR", help="Show the voice a selector maps to")
    voices_parser.set_defaults(func=cmd_voices)

    # rehearse
    rehearse_parser = subparsers.add_parser("rehearse", help="Rehearse a script with the AI partner")
    rehearse_parser.add_argument("file", help="Path to the script text file")
    rehearse_parser.add_argument("--as", dest="user", metavar="NAME", help="Character you play")
    rehearse_parser.add_argument("--partner", metavar="NAME", help="Character the AI plays")
    rehearse_parser.add_argument("--voice", help="Voice for the partner (key, voice name or any text)")
    rehearse_parser.add_argument("--cue", action="store_true", help='Wait for "Action!" before starting')
    rehearse_parser.add_argument("--manual", action="store_true", help="Confirm lines without listening or scoring")
    rehearse_parser.add_argument("--auto", action="store_true", help="Move on once every scripted word is heard")
    rehearse_parser.add_argument("--directions", action="store_true", help="Have the partner read stage directions")
    rehearse_parser.set_defaults(func=cmd_rehearse)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return

    args.func(args)
