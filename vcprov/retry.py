"""Bounded constant-interval retry loops with cooperative cancellation."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Callable, TypeVar

from loguru import logger

from .errors import ConnectivityError, ProvisionCancelled
from .output import OutputSink

log = logger

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    interval: float
    max_attempts: int

    def __post_init__(self) -> None:
        if self.interval < 0:
            raise ValueError(f'interval must be >= 0, got {self.interval}')
        if self.max_attempts < 1:
            raise ValueError(
                f'max_attempts must be >= 1, got {self.max_attempts}'
            )

    @classmethod
    def from_timeout(cls, timeout: float, interval: float) -> 'RetryPolicy':
        """Derive the attempt budget as ``ceil(timeout / interval)``."""
        if interval <= 0:
            return cls(interval=0, max_attempts=1)
        attempts = max(1, math.ceil(timeout / interval))
        return cls(interval=interval, max_attempts=attempts)


class CancelToken:
    """Cancellation signal shared by every blocking step of one run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise ProvisionCancelled('provisioning run was cancelled')

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        if self._event.wait(max(0.0, seconds)):
            raise ProvisionCancelled('provisioning run was cancelled')


def wait_until(
    probe: Callable[[], T | None],
    policy: RetryPolicy,
    *,
    what: str,
    sink: OutputSink,
    attempt_msg: str,
    ready_msg: str,
    cancel: CancelToken | None = None,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Call ``probe`` until it returns a value other than None/False.

    Exceptions raised by the probe count as a failed attempt. Cancellation
    is never swallowed. When the attempt budget is exhausted the last
    failure is raised as a :class:`ConnectivityError`.
    """
    cancel = cancel or CancelToken()
    sleep = sleep or cancel.sleep
    last_error: BaseException | None = None
    for attempt in range(1, policy.max_attempts + 1):
        cancel.check()
        sink.emit(f'{attempt_msg} (attempt {attempt}/{policy.max_attempts})')
        try:
            result = probe()
        except ProvisionCancelled:
            raise
        except Exception as ex:
            log.debug('{} probe attempt {} failed: {}', what, attempt, ex)
            last_error = ex
            result = None
        if result is not None and result is not False:
            sink.emit(ready_msg)
            return result
        if attempt < policy.max_attempts:
            sleep(policy.interval)
    detail = f': {last_error}' if last_error is not None else ''
    raise ConnectivityError(
        f'{what} not ready after {policy.max_attempts} attempt(s){detail}'
    ) from last_error
