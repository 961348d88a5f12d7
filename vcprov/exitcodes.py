"""Exit-status classification and the retry loop for the terminal client run.

Chef clients report RFC 062 exit codes. Three of them describe a
recognized non-error condition and always end the run successfully:

* 35: reboot scheduled
* 37: reboot required
* 213: client exited during an upgrade
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Iterable

from loguru import logger

from .errors import ConfigError, TerminalRunError
from .output import OutputSink
from .retry import CancelToken
from .util import CmdResult

log = logger

BENIGN_EXIT_CODES: dict[int, str] = {
    35: 'Reboot has been scheduled in the run state',
    37: 'Reboot needs to be completed',
    213: 'Chef has exited during a client upgrade',
}

DEFAULT_RETRY_EXIT_CODES: frozenset[int] = frozenset(BENIGN_EXIT_CODES)


class ExitDisposition(enum.Enum):
    SUCCESS = 'success'
    BENIGN = 'benign'
    RETRY = 'retry'
    FATAL = 'fatal'


@dataclass(frozen=True)
class ExitCodePolicy:
    """Classify client exit codes.

    ``retry_codes`` is the complete retry-eligible set as configured. It is
    never merged with :data:`DEFAULT_RETRY_EXIT_CODES`. Benign codes take
    precedence, so the effective retry set excludes them.
    """

    retry_codes: frozenset[int] = DEFAULT_RETRY_EXIT_CODES

    def __post_init__(self) -> None:
        if 0 in self.retry_codes:
            raise ConfigError('exit code 0 is always success and cannot be retried')

    @classmethod
    def from_codes(cls, codes: Iterable[int] | None) -> 'ExitCodePolicy':
        if codes is None:
            return cls()
        return cls(retry_codes=frozenset(int(c) for c in codes))

    @property
    def effective_retry_codes(self) -> frozenset[int]:
        return self.retry_codes - frozenset(BENIGN_EXIT_CODES)

    def classify(self, code: int) -> ExitDisposition:
        if code == 0:
            return ExitDisposition.SUCCESS
        if code in BENIGN_EXIT_CODES:
            return ExitDisposition.BENIGN
        if code in self.retry_codes:
            return ExitDisposition.RETRY
        return ExitDisposition.FATAL


def run_with_exit_code_retries(
    invoke: Callable[[], CmdResult],
    policy: ExitCodePolicy,
    *,
    max_retries: int,
    wait_s: float,
    sink: OutputSink,
    cancel: CancelToken | None = None,
    sleep: Callable[[float], None] | None = None,
) -> CmdResult:
    """Invoke the terminal step up to ``max_retries + 1`` times.

    ``invoke`` returns the structured result of a process that ran. If the
    process could not be launched at all, ``invoke`` raises and the error
    propagates unchanged.
    """
    cancel = cancel or CancelToken()
    sleep = sleep or cancel.sleep
    if max_retries < 0:
        raise ConfigError(f'max_retries must be >= 0, got {max_retries}')
    result: CmdResult | None = None
    for attempt in range(max_retries + 1):
        cancel.check()
        result = invoke()
        disposition = policy.classify(result.code)
        log.debug(
            'Client run attempt {} exited code={} disposition={}',
            attempt,
            result.code,
            disposition.value,
        )
        if disposition is ExitDisposition.SUCCESS:
            return result
        if disposition is ExitDisposition.BENIGN:
            sink.emit(BENIGN_EXIT_CODES[result.code])
            return result
        if disposition is ExitDisposition.FATAL:
            raise TerminalRunError(
                result.code, attempt + 1, result.stderr.strip()
            )
        if attempt < max_retries:
            sink.emit(
                f'Client run exited with code {result.code}; '
                f'waiting {wait_s}s before retrying ({attempt + 1}/{max_retries})...'
            )
            sleep(wait_s)
    assert result is not None
    raise TerminalRunError(result.code, max_retries + 1, result.stderr.strip())
