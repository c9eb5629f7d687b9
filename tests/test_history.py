import pytest
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from clinic_scheduler.history import HistoryStore, MAX_HISTORY, RESET_ACTION


@pytest.fixture
def store():
    """Fixture for a history store over plain dict states."""
    return HistoryStore({"n": 0})


@pytest.mark.parametrize("count", [1, 3, 10])
def test_undo_all_then_redo_all(store, count):
    """N commits followed by N undos returns the original object; N redos restore the last one."""
    initial = store.state
    for i in range(1, count + 1):
        store.commit(lambda s, i=i: {"n": i}, f"step {i}")
    final = store.state

    for _ in range(count):
        store.undo()
    assert store.state is initial
    assert not store.can_undo

    for _ in range(count):
        store.redo()
    assert store.state is final
    assert not store.can_redo


def test_commit_accepts_plain_value(store):
    assert store.commit({"n": 5}, "Set five") is True
    assert store.state == {"n": 5}
    assert store.present.action == "Set five"


def test_noop_commit_leaves_history_alone(store):
    """A mutator returning the same object creates no entry and keeps redo available."""
    store.commit(lambda s: {"n": 1}, "one")
    store.commit(lambda s: {"n": 2}, "two")
    store.undo()
    past_len = len(store.past)

    assert store.commit(lambda s: s, "nothing") is False
    assert len(store.past) == past_len
    assert store.can_redo


def test_commit_after_undo_discards_future(store):
    store.commit(lambda s: {"n": 1}, "one")
    store.commit(lambda s: {"n": 2}, "two")
    store.undo()
    store.undo()
    assert len(store.future) == 2

    store.commit(lambda s: {"n": 9}, "nine")
    assert store.future == []
    assert not store.can_redo
    assert store.redo() is None


def test_history_is_bounded():
    """After MAX_HISTORY + 1 commits the initial state can no longer be reached."""
    store = HistoryStore({"n": 0})
    for i in range(1, MAX_HISTORY + 2):
        store.commit({"n": i}, f"step {i}")

    assert len(store.past) == MAX_HISTORY

    while store.can_undo:
        store.undo()
    assert store.state == {"n": 1}


def test_undo_and_redo_report_action_labels(store):
    store.commit({"n": 1}, "Add employee")
    store.commit({"n": 2}, "Move shift")

    assert store.undo() == "Move shift"
    assert store.undo() == "Add employee"
    assert store.undo() is None
    assert store.redo() == "Add employee"
    assert store.redo() == "Move shift"


def test_reset_drops_history(store):
    store.commit({"n": 1}, "one")
    store.undo()

    store.reset({"n": 100})
    assert store.state == {"n": 100}
    assert store.present.action == RESET_ACTION
    assert not store.can_undo
    assert not store.can_redo


def test_listeners_see_every_change(store):
    seen = []
    store.subscribe(seen.append)

    store.commit({"n": 1}, "one")
    store.commit(lambda s: s, "noop")
    store.undo()
    store.redo()

    assert seen == [{"n": 1}, {"n": 0}, {"n": 1}]


def test_lazy_initial_state():
    store = HistoryStore(lambda: {"n": 42})
    assert store.state == {"n": 42}
