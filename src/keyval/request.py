"""
Completion signalling for engine requests and transactions, and the adapter
that turns it into awaitable futures.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional


class CompletionSource:
    """
    Base for engine objects that finish exactly once, either successfully
    (optionally with a result) or with an error.

    Listeners are registered per event name. Subclasses pick the names of
    their two terminal events through ``success_event`` and ``error_event``.
    """

    success_event = "success"
    error_event = "error"

    def __init__(self) -> None:
        self.ready_state = "pending"
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self._listeners: Dict[str, List[Callable[["CompletionSource"], None]]] = {
            self.success_event: [],
            self.error_event: [],
        }

    @property
    def done(self) -> bool:
        return self.ready_state == "done"

    def add_listener(self, event: str, callback: Callable[["CompletionSource"], None]) -> None:
        self._listeners[event].append(callback)

    def remove_listener(self, event: str, callback: Callable[["CompletionSource"], None]) -> None:
        try:
            self._listeners[event].remove(callback)
        except ValueError:
            pass

    def listener_count(self) -> int:
        return sum(len(callbacks) for callbacks in self._listeners.values())

    def _succeed(self, result: Any = None) -> None:
        if self.done:
            return
        self.ready_state = "done"
        self.result = result
        self._fire(self.success_event)

    def _fail(self, error: BaseException) -> None:
        if self.done:
            return
        self.ready_state = "done"
        self.error = error
        self._fire(self.error_event)

    def _fire(self, event: str) -> None:
        # Copy: listeners remove themselves while firing
        for callback in list(self._listeners[event]):
            callback(self)


def promisify_request(source: CompletionSource) -> "asyncio.Future[Any]":
    """
    Wrap a request or transaction into a future.

    The future resolves with ``source.result`` when the success event fires
    and fails with ``source.error`` when the error event fires. Whichever
    fires first wins; both listeners are detached at that moment so nothing
    stays attached to the source afterwards.

    Args:
        source: A pending or finished completion source

    Returns:
        A future resolved exactly once
    """
    future = asyncio.get_running_loop().create_future()

    if source.done:
        if source.error is not None:
            future.set_exception(source.error)
        else:
            future.set_result(source.result)
        return future

    def detach() -> None:
        source.remove_listener(source.success_event, on_success)
        source.remove_listener(source.error_event, on_error)

    def on_success(target: CompletionSource) -> None:
        detach()
        if not future.done():
            future.set_result(target.result)

    def on_error(target: CompletionSource) -> None:
        detach()
        if not future.done():
            future.set_exception(target.error)

    source.add_listener(source.success_event, on_success)
    source.add_listener(source.error_event, on_error)
    return future
