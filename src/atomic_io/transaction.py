"""Begin/commit/rollback sequencing with interrupt masking.

The runner here is a variant of a try/finally bracket with two different
finalisation actions: ``commit`` on success and ``rollback`` on failure.
Unlike a plain bracket, if the action completes but ``commit`` fails,
``rollback`` still runs on the same resource, so there is an execution in
which both finalisation actions are invoked.
"""

import contextlib
import signal
import threading
from collections.abc import Callable, Generator
from typing import Any, TypeVar

from atomic_io.logging import get_logger

R = TypeVar("R")
T = TypeVar("T")

# Signals deferred while a transaction is between begin and cleanup
MASKED_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT,)


class _SignalMask:
    """Defers delivery of MASKED_SIGNALS until the mask is lifted.

    A signal arriving while masked is recorded and re-delivered to the
    handler that was installed before masking began, either when a
    ``restore()`` block is entered or when the mask itself is exited.
    """

    def __init__(self, signals: tuple[signal.Signals, ...]) -> None:
        self.signals = signals
        self.previous: dict[int, Any] = {}
        self.pending: list[tuple[int, Any]] = []
        self.active = False

    def _defer(self, signum: int, frame: Any) -> None:
        get_logger().debug("Deferring signal until transaction cleanup", signal=signum)
        self.pending.append((signum, frame))

    def install(self) -> None:
        for signum in self.signals:
            self.previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._defer)
        self.active = True

    def uninstall(self) -> None:
        for signum, handler in self.previous.items():
            signal.signal(signum, handler)
        self.active = False

    def deliver_pending(self) -> None:
        """Hand deferred signals to the original handlers.

        Must be called with the original handlers installed, since a
        handler such as the default SIGINT one raises KeyboardInterrupt.
        """
        pending, self.pending = self.pending, []
        for signum, frame in pending:
            handler = self.previous.get(signum)
            if callable(handler):
                handler(signum, frame)
            elif handler == signal.SIG_DFL:
                signal.raise_signal(signum)
            # SIG_IGN and handlers not installed from Python: dropped

    @contextlib.contextmanager
    def restore(self) -> Generator[None, None, None]:
        """Temporarily lift the mask around an interruptible block."""
        if not self.active:
            yield
            return
        self.uninstall()
        try:
            self.deliver_pending()
            yield
        finally:
            self.install()


@contextlib.contextmanager
def masked(
    signals: tuple[signal.Signals, ...] = MASKED_SIGNALS,
) -> Generator[Callable[[], contextlib.AbstractContextManager[None]], None, None]:
    """Run a block with asynchronous interrupts deferred.

    Yields a ``restore`` factory; ``with restore():`` re-enables interrupts
    for just that nested block. Signals deferred outside a restore block are
    re-delivered after the masked block finishes.

    Python only delivers signals to the main thread, so outside it this is a
    no-op and ``restore()`` does nothing.

    Example:
        >>> with masked() as restore:
        ...     resource = acquire()
        ...     with restore():
        ...         use(resource)
        ...     release(resource)
    """
    if threading.current_thread() is not threading.main_thread():
        yield contextlib.nullcontext
        return

    mask = _SignalMask(signals)
    mask.install()
    try:
        yield mask.restore
    finally:
        mask.uninstall()
        mask.deliver_pending()


def _rollback_after(
    rollback: Callable[[R], Any], resource: R, primary: BaseException
) -> None:
    """Run rollback without letting its failure replace ``primary``."""
    try:
        rollback(resource)
    except Exception as e:
        get_logger().warning(f"Rollback failed after {type(primary).__name__}: {e}")
        primary.add_note(f"Rollback also failed: {e!r}")


def transact(
    begin: Callable[[], R],
    commit: Callable[[R], Any],
    rollback: Callable[[R], Any],
    action: Callable[[R], T],
) -> T:
    """Run ``action`` on a resource inside a begin/commit/rollback transaction.

    Guarantees:
    1. ``begin`` runs first and exactly once. If it raises, nothing else runs.
    2. If ``action`` raises, ``rollback`` runs and the original exception is
       re-raised.
    3. If ``action`` succeeds but ``commit`` raises, ``rollback`` still runs
       before the commit exception propagates.
    4. On success of both, ``action``'s result is returned and ``rollback``
       is never called.

    Interrupts are masked from ``begin`` until commit or rollback has
    finished, and unmasked only while ``action`` runs, so an interrupt can
    never skip cleanup. A rollback failure is logged and attached to the
    primary exception as a note instead of replacing it.

    Args:
        begin: Acquires the resource ("begin transaction")
        commit: Consumes the resource on success ("commit transaction")
        rollback: Consumes the resource on failure ("rollback transaction")
        action: Computation to run in between

    Returns:
        The value returned by ``action``
    """
    with masked() as restore:
        resource = begin()
        try:
            with restore():
                result = action(resource)
        except BaseException as e:
            _rollback_after(rollback, resource, e)
            raise

        try:
            commit(resource)
        except BaseException as e:
            _rollback_after(rollback, resource, e)
            raise

        return result
