"""Tests for the script store."""

from datetime import datetime, timedelta, timezone

import pytest

from scene_partner.models import Script
from scene_partner.store import ScriptStore


def test_add_text_parses(scene_text):
    """add_text parses the script and marks it parsed."""
    store = ScriptStore()
    script = store.add_text("Coffee", scene_text)
    assert script.status == "parsed"
    assert script.raw_text == scene_text
    assert {c.name for c in script.characters} == {"SARAH", "JOHN"}
    assert store.get(script.id) is script


def test_add_text_without_dialogue_stays_uploaded():
    """No dialogue: placeholders only, status uploaded."""
    store = ScriptStore()
    script = store.add_text("Notes", "Some thoughts on the second act.")
    assert script.status == "uploaded"
    assert script.lines == ()


def test_add_text_unique_ids(scene_text):
    """Scripts added in the same millisecond still get distinct ids."""
    store = ScriptStore()
    a = store.add_text("A", scene_text)
    b = store.add_text("B", scene_text)
    assert a.id != b.id
    assert len(store) == 2


def test_add_duplicate_id_rejected(sample_script):
    """Adding a second script with the same id raises."""
    store = ScriptStore([sample_script])
    with pytest.raises(ValueError):
        store.add(sample_script)


def test_remove(sample_script):
    """remove reports whether anything was deleted."""
    store = ScriptStore([sample_script])
    assert store.remove(sample_script.id) is True
    assert sample_script.id not in store
    assert store.remove(sample_script.id) is False


def test_all_scripts_newest_first():
    """Listing is ordered by creation time, newest first."""
    now = datetime.now(timezone.utc)
    old = Script(id="old", title="Old", created_at=now - timedelta(days=1))
    new = Script(id="new", title="New", created_at=now)
    store = ScriptStore([old, new])
    assert [s.id for s in store.all_scripts()] == ["new", "old"]


def test_update_is_copy_on_write(sample_script):
    """update returns a new record and leaves the old one untouched."""
    store = ScriptStore([sample_script])
    updated = store.update(sample_script.id, title="Renamed")
    assert updated.title == "Renamed"
    assert sample_script.title == "Coffee"
    assert store.get(sample_script.id) is updated
    assert updated.updated_at >= sample_script.updated_at


def test_update_missing_script():
    """Updating an unknown id raises KeyError."""
    with pytest.raises(KeyError):
        ScriptStore().update("nope", title="x")


def test_update_cannot_change_id(sample_script):
    """The id of a stored script is fixed."""
    store = ScriptStore([sample_script])
    with pytest.raises(ValueError):
        store.update(sample_script.id, id="other")


def test_assign_sets_role_and_voice(scene_text):
    """assign changes one character and returns the new record."""
    store = ScriptStore()
    script = store.add_text("Coffee", scene_text)
    updated = store.assign(script.id, "john", "ai", voice="voice-2")
    john = updated.character("JOHN")
    assert john.assignment == "ai"
    assert john.voice == "voice-2"
    assert script.character("JOHN").assignment == "unassigned"
    assert updated.status == "assigned"


def test_assign_ready_when_cast_complete(scene_text):
    """A user role plus a voiced AI role makes the script ready."""
    store = ScriptStore()
    script = store.add_text("Coffee", scene_text)
    store.assign(script.id, "SARAH", "user")
    updated = store.assign(script.id, "JOHN", "ai", voice="voice-1")
    assert updated.status == "ready"


def test_assign_back_to_unassigned(scene_text):
    """Clearing every role returns the script to parsed."""
    store = ScriptStore()
    script = store.add_text("Coffee", scene_text)
    store.assign(script.id, "SARAH", "user")
    updated = store.assign(script.id, "SARAH", "unassigned")
    assert updated.status == "parsed"


def test_assign_allows_several_user_roles(scene_text):
    """More than one character may be assigned to the actor."""
    store = ScriptStore()
    script = store.add_text("Coffee", scene_text)
    store.assign(script.id, "SARAH", "user")
    updated = store.assign(script.id, "JOHN", "user")
    assert [c.assignment for c in updated.characters] == ["user", "user"]


def test_assign_invalid_role(sample_script):
    """Unknown roles are rejected."""
    store = ScriptStore([sample_script])
    with pytest.raises(ValueError):
        store.assign(sample_script.id, "JOHN", "director")


def test_assign_unknown_character(sample_script):
    """Unknown characters are rejected."""
    store = ScriptStore([sample_script])
    with pytest.raises(KeyError):
        store.assign(sample_script.id, "MARY", "user")
