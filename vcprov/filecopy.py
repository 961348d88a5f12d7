"""Standalone file provisioner: copy a local source or inline content."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from loguru import logger

from .config import ConnectConfig, GuestConfig, SectionDecoder, VSphereConfig, decode_vsphere
from .connect import ChannelFactory, Connector, open_guest
from .errors import ConfigError
from .output import LogSink, OutputSink
from .results import UploadResult
from .retry import CancelToken
from .util import expand

log = logger


@dataclass(frozen=True)
class FileCopyConfig:
    vsphere: VSphereConfig = field(default_factory=VSphereConfig)
    guest: GuestConfig = field(default_factory=GuestConfig)
    connect: ConnectConfig = field(default_factory=ConnectConfig)
    source: str = ''
    content: str | None = None
    destination: str = ''


def decode_file_config(
    raw: Mapping[str, Any],
    *,
    env: Mapping[str, str] | None = None,
) -> FileCopyConfig:
    """Decode the target sections plus the ``[file]`` table."""
    problems: list[str] = []
    vsphere, guest, connect = decode_vsphere(raw, problems, env)
    fs = SectionDecoder(raw, 'file', problems, env)
    source = fs.string('source')
    content = fs.string('content') if 'content' in fs.body else None
    destination = fs.string('destination', required=True)
    if source and content is not None:
        problems.append("'source' conflicts with 'content'")
    elif not source and content is None:
        problems.append("must provide one of 'source' or 'content'")
    if problems:
        raise ConfigError(problems)
    return FileCopyConfig(
        vsphere=vsphere,
        guest=guest,
        connect=connect,
        source=expand(source) if source else '',
        content=content,
        destination=destination,
    )


def copy_file(
    cfg: FileCopyConfig,
    *,
    connector: Connector | None = None,
    channel_factory: ChannelFactory | None = None,
    sink: OutputSink | None = None,
    cancel: CancelToken | None = None,
    sleep: Callable[[float], None] | None = None,
) -> UploadResult:
    """Upload ``cfg.source`` (file or directory) or ``cfg.content``.

    A directory is sent as ``<destination>.tar`` and unpacked into
    ``destination`` on the guest.
    """
    sink = sink or LogSink()
    cancel = cancel or CancelToken()
    if cfg.source and not Path(cfg.source).exists():
        raise ConfigError(f'source does not exist: {cfg.source}')
    with open_guest(
        cfg.vsphere,
        cfg.guest,
        cfg.connect,
        sink=sink,
        cancel=cancel,
        connector=connector,
        channel_factory=channel_factory,
        sleep=sleep,
    ) as target:
        sink.emit('Starting to upload file!')
        dst = cfg.destination
        result = UploadResult(destination=dst)
        if cfg.source:
            src = Path(cfg.source)
            if src.is_dir():
                archive = dst.rstrip('/\\') + '.tar'
                target.transfer.upload_source(src, archive)
                target.transfer.run_checked(
                    target.profile.extract_cmd(archive, dst)
                )
                result = UploadResult(
                    destination=archive, archived=True, extracted_to=dst
                )
            else:
                target.transfer.upload_source(src, dst)
        else:
            target.transfer.upload(dst, cfg.content or '')
        sink.emit('File uploaded!')
    return result
