"""At-most-once removal of sensitive artifacts from the guest."""

from __future__ import annotations

import threading
from typing import Callable

from loguru import logger

from .output import OutputSink

log = logger


class CleanupGuard:
    """Run a cleanup action exactly once across every call site.

    The explicit call before the terminal run and the deferred call at
    orchestrator exit share one guard. Whichever runs first performs the
    action. Failures are downgraded to a warning on the sink.
    """

    def __init__(
        self,
        action: Callable[[], None],
        sink: OutputSink,
        *,
        label: str = 'Cleanup user key',
    ):
        self._action = action
        self._sink = sink
        self._label = label
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def __call__(self) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
            self._sink.emit(f'{self._label}...')
            try:
                self._action()
            except Exception as ex:
                log.debug('Cleanup action failed: {!r}', ex)
                self._sink.emit(
                    f'WARNING: Failed to cleanup user key on new node: {ex}'
                )
