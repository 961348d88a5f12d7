"""CLI commands for the chef, file and remote-exec provisioners."""

from __future__ import annotations

import scriptconfig as scfg

from ..config import summarize
from ..filecopy import copy_file, decode_file_config
from ..orchestrator import provision
from ..pipeline import STAGES
from ..remote_exec import decode_exec_config, run_remote
from ..retry import CancelToken
from ._common import (
    _BaseCommand,
    _install_cancel_handlers,
    _load_cfg,
    _load_raw,
    log,
)


class ChefCLI(_BaseCommand):
    """Install, configure, register and run Chef Client on the guest."""

    dry_run = scfg.Value(
        False, isflag=True, help='Print the resolved plan without connecting.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        if args.dry_run:
            print(summarize(cfg))
            print('stages:')
            for stage in STAGES:
                state = 'run' if stage.predicate(cfg) else 'skip'
                print(f'  - {stage.name}: {state}')
            return 0
        cancel = CancelToken()
        _install_cancel_handlers(cancel)
        result = provision(cfg, cancel=cancel)
        log.info(
            'Provisioning complete: os={} stages={} exit_code={}',
            result.os_type,
            ','.join(result.stages_run),
            result.client_exit_code,
        )
        return 0


class FileCLI(_BaseCommand):
    """Upload a file, a directory or inline content to the guest."""

    source = scfg.Value('', help='Local file or directory to upload.')
    content = scfg.Value(None, help='Inline content to upload instead of a source.')
    destination = scfg.Value('', help='Destination path on the guest.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        raw = _load_raw(args.config)
        section = dict(raw.get('file', {}) or {})
        if args.source:
            section['source'] = args.source
            section.pop('content', None)
        if args.content is not None:
            section['content'] = args.content
            section.pop('source', None)
        if args.destination:
            section['destination'] = args.destination
        raw['file'] = section
        cfg = decode_file_config(raw)
        cancel = CancelToken()
        _install_cancel_handlers(cancel)
        result = copy_file(cfg, cancel=cancel)
        log.info('Upload result: {}', result.as_dict())
        return 0


class ExecCLI(_BaseCommand):
    """Run commands or a local script on the guest."""

    command = scfg.Value(
        [], nargs='*', help='Command line(s) to run; overrides [exec] in config.'
    )
    script = scfg.Value('', help='Local script to upload and run.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        raw = _load_raw(args.config)
        section = dict(raw.get('exec', {}) or {})
        if args.command:
            section['commands'] = list(args.command)
            section.pop('script', None)
        if args.script:
            section['script'] = args.script
            section.pop('commands', None)
        raw['exec'] = section
        cfg = decode_exec_config(raw)
        cancel = CancelToken()
        _install_cancel_handlers(cancel)
        results = run_remote(cfg, cancel=cancel)
        log.info('Ran {} command(s) successfully', len(results))
        return 0
