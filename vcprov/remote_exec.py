"""Standalone remote-exec provisioner: run commands or a script on the guest."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from loguru import logger

from .config import ConnectConfig, GuestConfig, SectionDecoder, VSphereConfig, decode_vsphere
from .connect import ChannelFactory, Connector, open_guest
from .errors import ConfigError
from .output import LogSink, OutputSink
from .retry import CancelToken
from .util import CmdResult, expand

log = logger


@dataclass(frozen=True)
class ExecConfig:
    vsphere: VSphereConfig = field(default_factory=VSphereConfig)
    guest: GuestConfig = field(default_factory=GuestConfig)
    connect: ConnectConfig = field(default_factory=ConnectConfig)
    commands: tuple[str, ...] = ()
    script: str = ''


def decode_exec_config(
    raw: Mapping[str, Any],
    *,
    env: Mapping[str, str] | None = None,
) -> ExecConfig:
    problems: list[str] = []
    vsphere, guest, connect = decode_vsphere(raw, problems, env)
    es = SectionDecoder(raw, 'exec', problems, env)
    commands = es.string_list('commands')
    script = es.string('script')
    if commands and script:
        problems.append("'commands' conflicts with 'script'")
    elif not commands and not script:
        problems.append("must provide one of 'commands' or 'script'")
    if problems:
        raise ConfigError(problems)
    return ExecConfig(
        vsphere=vsphere,
        guest=guest,
        connect=connect,
        commands=commands,
        script=expand(script) if script else '',
    )


def run_remote(
    cfg: ExecConfig,
    *,
    connector: Connector | None = None,
    channel_factory: ChannelFactory | None = None,
    sink: OutputSink | None = None,
    cancel: CancelToken | None = None,
    sleep: Callable[[float], None] | None = None,
) -> list[CmdResult]:
    """Run each command in order; the first non-zero exit is fatal."""
    sink = sink or LogSink()
    cancel = cancel or CancelToken()
    script_text = None
    if cfg.script:
        try:
            script_text = Path(cfg.script).read_text(encoding='utf-8')
        except OSError as ex:
            raise ConfigError(f'cannot read script {cfg.script}: {ex}') from ex
    results: list[CmdResult] = []
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
        commands = list(cfg.commands)
        remote_script = None
        if script_text is not None:
            remote_script = target.profile.script_path()
            target.transfer.upload(remote_script, script_text)
            commands = [target.profile.script_cmd(remote_script)]
        try:
            for cmd in commands:
                cancel.check()
                results.append(target.transfer.run_checked(cmd))
        finally:
            if remote_script is not None:
                try:
                    target.channel.without_cancel().delete_file(remote_script)
                except Exception as ex:
                    log.warning('Could not remove {}: {}', remote_script, ex)
    return results
