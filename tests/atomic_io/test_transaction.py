"""Tests for the begin/commit/rollback runner and interrupt masking."""

import signal
import threading

import pytest

from atomic_io.transaction import masked, transact


class Recorder:
    """Records the order in which transaction steps run."""

    def __init__(self):
        self.calls = []

    def begin(self):
        self.calls.append("begin")
        return "handle"

    def commit(self, handle):
        self.calls.append(("commit", handle))

    def rollback(self, handle):
        self.calls.append(("rollback", handle))

    def action(self, handle):
        self.calls.append(("action", handle))
        return 42


@pytest.fixture
def rec():
    return Recorder()


# ============================================================================
# Sequencing
# ============================================================================


def test_success_runs_begin_action_commit(rec):
    """Successful action is committed and its result returned."""
    result = transact(rec.begin, rec.commit, rec.rollback, rec.action)

    assert result == 42
    assert rec.calls == ["begin", ("action", "handle"), ("commit", "handle")]


def test_begin_failure_runs_nothing_else(rec):
    """If begin fails, there is nothing to commit or roll back."""

    def begin():
        raise FileNotFoundError("no such directory")

    with pytest.raises(FileNotFoundError):
        transact(begin, rec.commit, rec.rollback, rec.action)

    assert rec.calls == []


def test_action_failure_rolls_back_and_reraises(rec):
    """Action failure triggers rollback and the original error propagates."""

    def action(handle):
        raise ValueError("bad content")

    with pytest.raises(ValueError, match="bad content"):
        transact(rec.begin, rec.commit, rec.rollback, action)

    assert rec.calls == ["begin", ("rollback", "handle")]


def test_commit_failure_still_rolls_back(rec):
    """Rollback runs on the same handle when commit fails."""

    def commit(handle):
        rec.calls.append(("commit", handle))
        raise OSError("rename failed")

    with pytest.raises(OSError, match="rename failed"):
        transact(rec.begin, commit, rec.rollback, rec.action)

    assert rec.calls == [
        "begin",
        ("action", "handle"),
        ("commit", "handle"),
        ("rollback", "handle"),
    ]


def test_rollback_failure_does_not_replace_primary_error(rec):
    """A failing rollback is attached as a note, the action error wins."""

    def action(handle):
        raise ValueError("primary")

    def rollback(handle):
        raise PermissionError("cannot delete temp file")

    with pytest.raises(ValueError, match="primary") as exc_info:
        transact(rec.begin, rec.commit, rollback, action)

    notes = getattr(exc_info.value, "__notes__", [])
    assert any("cannot delete temp file" in note for note in notes)


def test_rollback_failure_after_commit_failure_keeps_commit_error(rec):
    """Commit error is what the caller sees even if rollback fails too."""

    def commit(handle):
        raise OSError("cross-device link")

    def rollback(handle):
        raise OSError("unlink failed")

    with pytest.raises(OSError, match="cross-device link") as exc_info:
        transact(rec.begin, commit, rollback, rec.action)

    assert any("unlink failed" in note for note in exc_info.value.__notes__)


def test_rollback_failure_is_logged(rec, capsys):
    """Rollback failures are reported as warnings on stderr."""

    def action(handle):
        raise ValueError("primary")

    def rollback(handle):
        raise OSError("disk gone")

    with pytest.raises(ValueError):
        transact(rec.begin, rec.commit, rollback, action)

    captured = capsys.readouterr()
    assert "Warning: Rollback failed after ValueError: disk gone" in captured.err


# ============================================================================
# Interrupt masking
# ============================================================================


def test_interrupt_during_action_rolls_back(rec):
    """SIGINT during the action is delivered and triggers rollback."""

    def action(handle):
        signal.raise_signal(signal.SIGINT)
        rec.calls.append("unreachable")

    with pytest.raises(KeyboardInterrupt):
        transact(rec.begin, rec.commit, rec.rollback, action)

    assert rec.calls == ["begin", ("rollback", "handle")]


def test_interrupt_during_begin_is_deferred_until_action(rec):
    """SIGINT during begin cannot skip rollback of the acquired handle."""

    def begin():
        signal.raise_signal(signal.SIGINT)
        rec.calls.append("begin finished")
        return "handle"

    with pytest.raises(KeyboardInterrupt):
        transact(begin, rec.commit, rec.rollback, rec.action)

    # Delivered when the action is about to run, so rollback still happens
    assert rec.calls == ["begin finished", ("rollback", "handle")]


def test_interrupt_during_commit_is_delivered_after_commit(rec):
    """SIGINT during commit lets commit finish, and rollback never runs."""

    def commit(handle):
        signal.raise_signal(signal.SIGINT)
        rec.calls.append(("commit", handle))

    with pytest.raises(KeyboardInterrupt):
        transact(rec.begin, commit, rec.rollback, rec.action)

    assert rec.calls == ["begin", ("action", "handle"), ("commit", "handle")]


def test_interrupt_during_rollback_lets_rollback_finish(rec):
    """SIGINT during rollback is honored only after cleanup completes."""

    def action(handle):
        raise ValueError("primary")

    def rollback(handle):
        signal.raise_signal(signal.SIGINT)
        rec.calls.append(("rollback finished", handle))

    with pytest.raises(KeyboardInterrupt) as exc_info:
        transact(rec.begin, rec.commit, rollback, action)

    assert rec.calls == ["begin", ("rollback finished", "handle")]
    assert isinstance(exc_info.value.__context__, ValueError)


def test_handlers_restored_after_transaction(rec):
    """The SIGINT handler in place before the transaction is reinstated."""
    before = signal.getsignal(signal.SIGINT)

    transact(rec.begin, rec.commit, rec.rollback, rec.action)

    assert signal.getsignal(signal.SIGINT) is before


def test_custom_handler_receives_deferred_signal():
    """A deferred signal goes to the handler installed before masking."""
    received = []
    previous = signal.signal(signal.SIGINT, lambda signum, frame: received.append(signum))
    try:
        with masked():
            signal.raise_signal(signal.SIGINT)
            assert received == []
        assert received == [signal.SIGINT]
    finally:
        signal.signal(signal.SIGINT, previous)


def test_restore_block_is_interruptible():
    """Inside restore() signals reach the original handler immediately."""
    received = []
    previous = signal.signal(signal.SIGINT, lambda signum, frame: received.append(signum))
    try:
        with masked() as restore:
            with restore():
                signal.raise_signal(signal.SIGINT)
                assert received == [signal.SIGINT]
    finally:
        signal.signal(signal.SIGINT, previous)


def test_nested_masks_defer_to_outer_region():
    """An inner restore() inside an outer mask stays masked."""
    received = []
    previous = signal.signal(signal.SIGINT, lambda signum, frame: received.append(signum))
    try:
        with masked():
            with masked() as inner_restore:
                with inner_restore():
                    signal.raise_signal(signal.SIGINT)
            assert received == []
        assert received == [signal.SIGINT]
    finally:
        signal.signal(signal.SIGINT, previous)


def test_transact_in_worker_thread(rec):
    """Masking is skipped off the main thread; sequencing still holds."""
    results = []
    thread = threading.Thread(
        target=lambda: results.append(transact(rec.begin, rec.commit, rec.rollback, rec.action))
    )
    thread.start()
    thread.join()

    assert results == [42]
    assert rec.calls == ["begin", ("action", "handle"), ("commit", "handle")]
