"""Shared helpers for guest command results and path handling."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from .errors import ProvisionError

_ANSI_RE = re.compile(r'\x1b\[[0-9;]+m')


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.code == 0


class GuestCommandError(ProvisionError):
    """A guest process ran and exited with a non-zero status."""

    def __init__(self, cmd: str, result: CmdResult):
        self.cmd = cmd
        self.result = result
        self.code = result.code
        super().__init__(
            f'Command failed (code={result.code}): {cmd}\n{result.stderr}'.strip()
        )


def expand(path: str) -> str:
    return os.path.expandvars(os.path.expanduser(path))


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub('', text).replace('\r', '\n')


def mask(secret: str) -> str:
    return '********' if secret else ''
