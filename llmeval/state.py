"""Observable evaluator state and the context it is published on.

The evaluator never mutates its visible fields directly from the generation
thread. Every change is handed to a Dispatcher, which applies it on a single
designated context and then notifies subscribers with an immutable
EvaluatorState snapshot. A presentation layer therefore never sees a partial
update and never needs its own locking.

Usage:
    from llmeval.state import ObservableState, SerialDispatcher

    state = ObservableState(SerialDispatcher())
    unsubscribe = state.subscribe(lambda snap: print(snap.output))
    state.update(output="hello")      # applied and delivered on the dispatcher thread
    print(state.snapshot().output)
    unsubscribe()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Subscriber = Callable[["EvaluatorState"], None]


@dataclass(frozen=True)
class EvaluatorState:
    """Snapshot of everything a presentation layer displays.

    Attributes:
        running: True while a generation is in flight.
        output: Generated text published so far.
        model_info: Load status ("Downloading ...: NN%" / "Loaded ...").
        stat: Timing statistics ("Init: ...s Tokens/second: ...").
    """

    running: bool = False
    output: str = ""
    model_info: str = ""
    stat: str = ""


class Dispatcher(Protocol):
    """The single context on which state changes are applied."""

    def run(self, fn: Callable[[], T]) -> T:
        """Run fn on the dispatcher's context and return its result.

        Blocks the caller until fn has completed.
        """
        ...


class ImmediateDispatcher:
    """Runs work on the calling thread, serialized by a lock.

    Suitable when subscribers are thread-safe or when there is only one
    caller (tests, the CLI).
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def run(self, fn: Callable[[], T]) -> T:
        with self._lock:
            return fn()


class SerialDispatcher:
    """Runs work on one dedicated thread, like a UI main loop.

    Calls made from the dispatcher thread itself run inline so that a
    subscriber triggering another update does not deadlock.
    """

    def __init__(self, name: str = "llmeval-state") -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._thread_ident: int | None = None
        self._executor.submit(self._remember_thread).result()

    def _remember_thread(self) -> None:
        self._thread_ident = threading.get_ident()

    def run(self, fn: Callable[[], T]) -> T:
        if threading.get_ident() == self._thread_ident:
            return fn()
        return self._executor.submit(fn).result()

    def shutdown(self) -> None:
        """Stop the dispatcher thread after pending work completes."""
        self._executor.shutdown(wait=True)


class ObservableState:
    """Holds the current EvaluatorState and publishes changes through a Dispatcher."""

    def __init__(self, dispatcher: Dispatcher | None = None) -> None:
        self._dispatcher: Dispatcher = dispatcher or ImmediateDispatcher()
        self._state = EvaluatorState()
        self._subscribers: list[Subscriber] = []
        self._subscribers_lock = threading.Lock()

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    def snapshot(self) -> EvaluatorState:
        """Return the latest published state."""
        return self._state

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback invoked on the dispatcher context after each change.

        Returns:
            A function that removes the subscription.
        """
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def update(self, **changes: Any) -> EvaluatorState:
        """Apply field changes on the dispatcher context.

        Args:
            **changes: EvaluatorState fields to replace.

        Returns:
            The new snapshot.
        """
        return self._dispatcher.run(
            lambda: self._apply(lambda current: replace(current, **changes))
        )

    def modify(self, fn: Callable[[EvaluatorState], EvaluatorState]) -> EvaluatorState:
        """Derive the next state from the current one on the dispatcher context.

        Use this instead of snapshot() + update() when the new value depends
        on the old one (e.g. appending to stat).
        """
        return self._dispatcher.run(lambda: self._apply(fn))

    def _apply(self, fn: Callable[[EvaluatorState], EvaluatorState]) -> EvaluatorState:
        new_state = fn(self._state)
        if new_state == self._state:
            return new_state
        self._state = new_state
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(new_state)
            except Exception:
                logger.exception("State subscriber raised; continuing")
        return new_state
