from __future__ import annotations

import sys

import scriptconfig as scfg

from ..config import CONFIG_TEMPLATE, summarize
from ._common import _BaseCommand, _cfg_path, _load_cfg


class InitCLI(_BaseCommand):
    """Write a commented config template."""

    force = scfg.Value(
        False, isflag=True, help='Overwrite an existing config file.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        if path.exists() and not args.force:
            print(f'Config already exists: {path}', file=sys.stderr)
            print('Use --force to overwrite it.', file=sys.stderr)
            return 2
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(CONFIG_TEMPLATE, encoding='utf-8')
        print(f'Wrote config template: {path}')
        return 0


class CheckCLI(_BaseCommand):
    """Validate a config file and print the resolved settings."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        print(f'# Config: {_cfg_path(args.config)}')
        print(summarize(cfg))
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Config file management commands."""

    init = InitCLI
    check = CheckCLI
