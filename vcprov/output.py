"""Output sinks for human-readable progress lines.

A sink receives one line per progress event. Sinks are best-effort: a
failure to record a line never aborts a run.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

import ubelt as ub
from loguru import logger

from .util import strip_ansi

log = logger


class OutputSink(Protocol):
    def emit(self, line: str) -> None: ...


class LogSink:
    """Forward progress lines to the loguru logger."""

    def __init__(self, prefix: str = ''):
        self.prefix = prefix

    def emit(self, line: str) -> None:
        log.opt(depth=1).info('{}{}', self.prefix, line)


class ListSink:
    """Collect progress lines in memory."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def emit(self, line: str) -> None:
        self.lines.append(line)


class FileSink:
    """Append ANSI-stripped lines to a local log file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    @classmethod
    def for_node(cls, node_name: str, log_dir: Path | str = 'logfiles') -> 'FileSink':
        dpath = ub.Path(log_dir).ensuredir()
        fpath = Path(dpath) / node_name
        fpath.write_text('', encoding='utf-8')
        return cls(fpath)

    def emit(self, line: str) -> None:
        text = strip_ansi(line)
        if not text.endswith('\n'):
            text += '\n'
        try:
            with self.path.open('a', encoding='utf-8') as file:
                file.write(text)
        except OSError as ex:
            log.warning('Failed writing output to logfile {}: {}', self.path, ex)
