"""Project-specific exception types."""

from __future__ import annotations


class ProvisionError(RuntimeError):
    """Base error for domain-level vcprov failures."""


class ConfigError(ProvisionError):
    """Raised when the provisioning configuration is invalid."""

    def __init__(self, problems: list[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__('; '.join(self.problems))


class ConnectivityError(ProvisionError):
    """Raised when an endpoint never became ready within its retry budget."""


class GuestChannelError(ProvisionError):
    """Raised when a guest operation could not be carried out at all."""


class StageError(ProvisionError):
    """Raised when a pipeline stage fails."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.code = getattr(cause, 'code', None)
        super().__init__(f'stage {stage!r} failed: {cause}')


class TerminalRunError(ProvisionError):
    """Raised when the terminal client run ends with a fatal exit code."""

    def __init__(self, code: int, attempts: int, detail: str = ''):
        self.code = code
        self.attempts = attempts
        msg = f'client run failed with exit code {code} after {attempts} attempt(s)'
        if detail:
            msg += f': {detail}'
        super().__init__(msg)


class ProvisionCancelled(ProvisionError):
    """Raised when the caller cancelled the run."""
