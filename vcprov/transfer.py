"""Thin upload/run adapter bound to one guest channel.

The adapter has no retry logic. It turns command lines into shell
invocations for the selected OS profile, collects their output from a
guest-side log file, and packages directory sources into a tar archive.
"""

from __future__ import annotations

import io
import os
import stat
import tarfile
import uuid
from pathlib import Path
from typing import BinaryIO, Protocol

from loguru import logger

from .errors import GuestChannelError
from .output import OutputSink
from .platforms import OSProfile
from .util import CmdResult, GuestCommandError

log = logger


class GuestChannel(Protocol):
    """Guest agent primitives consumed by the provisioner."""

    def test_credentials(self) -> None: ...

    def upload_file(self, path: str, stream: BinaryIO) -> None: ...

    def download_file(self, path: str) -> bytes: ...

    def run_command(self, program: str, arguments: str) -> CmdResult: ...

    def delete_file(self, path: str) -> None: ...

    def guest_os_family(self) -> str: ...

    def without_cancel(self) -> GuestChannel: ...


def create_tar(src: Path | str, dst: BinaryIO) -> list[str]:
    """Write the regular files directly inside ``src`` to a tar stream.

    Entries keep their name, size, mode and modification time.
    Subdirectories are not recursed into. Returns the archived names.
    """
    src = Path(src)
    names: list[str] = []
    with tarfile.open(fileobj=dst, mode='w') as tar:
        for entry in sorted(os.scandir(src), key=lambda e: e.name):
            if entry.is_dir():
                continue
            st = entry.stat()
            info = tarfile.TarInfo(name=entry.name)
            info.size = st.st_size
            info.mode = stat.S_IMODE(st.st_mode)
            info.mtime = st.st_mtime
            with open(entry.path, 'rb') as file:
                tar.addfile(info, file)
            names.append(entry.name)
    return names


class GuestTransfer:
    """Upload and run primitives against one bound guest."""

    def __init__(
        self,
        channel: GuestChannel,
        profile: OSProfile,
        sink: OutputSink,
    ):
        self.channel = channel
        self.profile = profile
        self.sink = sink

    def upload(self, path: str, stream: BinaryIO | bytes | str) -> None:
        if isinstance(stream, str):
            stream = stream.encode('utf-8')
        if isinstance(stream, bytes):
            stream = io.BytesIO(stream)
        log.debug('UPLOAD: {}', path)
        self.channel.upload_file(path, stream)

    def upload_source(self, src: Path | str, dst: str) -> bool:
        """Upload a local file, or a directory as a single tar archive.

        Returns True when ``dst`` received an archive.
        """
        src = Path(src)
        if src.is_dir():
            buf = io.BytesIO()
            names = create_tar(src, buf)
            log.debug('Archived {} file(s) from {}', len(names), src)
            buf.seek(0)
            self.upload(dst, buf)
            return True
        with src.open('rb') as file:
            self.upload(dst, file)
        return False

    def run(self, command_line: str, *, echo: bool = True) -> CmdResult:
        """Run ``command_line`` through the guest shell and return its result."""
        if echo:
            self.sink.emit(f'[cmd] {command_line}')
        log_path = self._log_path()
        program, arguments = self.profile.wrap(command_line, log_path)
        res = self.channel.run_command(program, arguments)
        output = self._collect_output(log_path)
        for line in output.splitlines():
            self.sink.emit(line)
        return CmdResult(res.code, output or res.stdout, res.stderr)

    def run_checked(self, command_line: str) -> CmdResult:
        res = self.run(command_line)
        if res.code != 0:
            raise GuestCommandError(command_line, res)
        return res

    def succeeds(self, command_line: str) -> bool:
        return self.run(command_line).code == 0

    def _log_path(self) -> str:
        return f'{self.profile.temp_dir}/vcprov-{uuid.uuid4().hex[:12]}.log'

    def _collect_output(self, log_path: str) -> str:
        try:
            data = self.channel.download_file(log_path)
        except GuestChannelError as ex:
            log.debug('No command output collected from {}: {}', log_path, ex)
            return ''
        try:
            self.channel.delete_file(log_path)
        except GuestChannelError as ex:
            log.debug('Could not remove guest log {}: {}', log_path, ex)
        return data.decode('utf-8', errors='replace')
