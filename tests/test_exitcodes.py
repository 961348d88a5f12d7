from __future__ import annotations

import pytest

from _fakes import Sleeps
from vcprov.errors import ConfigError, TerminalRunError
from vcprov.exitcodes import (
    BENIGN_EXIT_CODES,
    DEFAULT_RETRY_EXIT_CODES,
    ExitCodePolicy,
    ExitDisposition,
    run_with_exit_code_retries,
)
from vcprov.output import ListSink
from vcprov.util import CmdResult


class Scripted:
    def __init__(self, *codes: int):
        self.codes = list(codes)
        self.calls = 0

    def __call__(self) -> CmdResult:
        code = self.codes[min(self.calls, len(self.codes) - 1)]
        self.calls += 1
        return CmdResult(code, stderr=f'exit {code}')


def _run(invoke, policy=None, *, max_retries=0, sink=None, sleep=None):
    return run_with_exit_code_retries(
        invoke,
        policy or ExitCodePolicy(),
        max_retries=max_retries,
        wait_s=30,
        sink=sink or ListSink(),
        sleep=sleep or Sleeps(),
    )


def test_default_retry_set() -> None:
    assert DEFAULT_RETRY_EXIT_CODES == {35, 37, 213}
    assert ExitCodePolicy.from_codes(None).retry_codes == {35, 37, 213}


def test_classification() -> None:
    policy = ExitCodePolicy.from_codes([1, 35])
    assert policy.classify(0) is ExitDisposition.SUCCESS
    assert policy.classify(35) is ExitDisposition.BENIGN
    assert policy.classify(213) is ExitDisposition.BENIGN
    assert policy.classify(1) is ExitDisposition.RETRY
    assert policy.classify(2) is ExitDisposition.FATAL
    assert policy.effective_retry_codes == {1}


def test_zero_in_retry_set_is_rejected() -> None:
    with pytest.raises(ConfigError):
        ExitCodePolicy.from_codes([0, 1])


def test_first_attempt_success() -> None:
    invoke = Scripted(0)
    sleeps = Sleeps()
    res = _run(invoke, max_retries=3, sleep=sleeps)
    assert res.code == 0
    assert invoke.calls == 1
    assert sleeps.calls == []


@pytest.mark.parametrize('code', sorted(BENIGN_EXIT_CODES))
def test_benign_codes_end_successfully(code) -> None:
    invoke = Scripted(code)
    sink = ListSink()
    res = _run(invoke, ExitCodePolicy.from_codes([1]), max_retries=3, sink=sink)
    assert res.code == code
    assert invoke.calls == 1
    assert sink.lines == [BENIGN_EXIT_CODES[code]]


def test_retry_then_success() -> None:
    invoke = Scripted(1, 1, 0)
    sleeps = Sleeps()
    res = _run(invoke, ExitCodePolicy.from_codes([1]), max_retries=3, sleep=sleeps)
    assert res.code == 0
    assert invoke.calls == 3
    assert sleeps.calls == [30, 30]


def test_retries_exhausted_makes_max_retries_plus_one_attempts() -> None:
    invoke = Scripted(1)
    sleeps = Sleeps()
    with pytest.raises(TerminalRunError) as exc_info:
        _run(invoke, ExitCodePolicy.from_codes([1]), max_retries=2, sleep=sleeps)
    assert invoke.calls == 3
    assert sleeps.calls == [30, 30]
    assert exc_info.value.code == 1
    assert exc_info.value.attempts == 3


def test_code_outside_retry_set_is_fatal_immediately() -> None:
    invoke = Scripted(2)
    sleeps = Sleeps()
    with pytest.raises(TerminalRunError) as exc_info:
        _run(invoke, ExitCodePolicy.from_codes([1]), max_retries=5, sleep=sleeps)
    assert invoke.calls == 1
    assert sleeps.calls == []
    assert exc_info.value.code == 2
    assert 'exit 2' in str(exc_info.value)


def test_configured_set_replaces_defaults() -> None:
    policy = ExitCodePolicy.from_codes([42])
    assert policy.retry_codes == {42}
    # 1 is in neither the configured nor the default set.
    invoke = Scripted(1)
    with pytest.raises(TerminalRunError):
        _run(invoke, policy, max_retries=3)
    assert invoke.calls == 1


def test_no_retries_configured_single_attempt() -> None:
    invoke = Scripted(1)
    with pytest.raises(TerminalRunError) as exc_info:
        _run(invoke, ExitCodePolicy.from_codes([1]), max_retries=0)
    assert invoke.calls == 1
    assert exc_info.value.attempts == 1


def test_launch_failure_propagates_unchanged() -> None:
    def invoke():
        raise OSError('agent unreachable')

    with pytest.raises(OSError, match='agent unreachable'):
        _run(invoke, max_retries=3)


def test_negative_max_retries_rejected() -> None:
    with pytest.raises(ConfigError):
        _run(Scripted(0), max_retries=-1)
