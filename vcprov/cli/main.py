"""Top-level modal CLI wiring, exit-code mapping, and logging setup."""

from __future__ import annotations

import os
import sys
import tomllib

import scriptconfig as scfg
from loguru import logger

from ..errors import ConfigError, ProvisionCancelled, ProvisionError
from ._common import _cfg_path, log
from .config import ConfigModalCLI
from .provision import ChefCLI, ExecCLI, FileCLI

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


class VCProvModalCLI(scfg.ModalCLI):
    """Provision vSphere guests through the guest operations channel."""

    config = ConfigModalCLI
    chef = ChefCLI
    file = FileCLI
    exec = ExecCLI


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    verbosity = _config_verbosity(argv)
    _setup_logging(_count_verbose(argv), verbosity)

    try:
        rc = VCProvModalCLI.main(argv=argv, _noexit=True)
    except ConfigError as ex:
        print(f'CONFIG ERROR: {ex}', file=sys.stderr)
        sys.exit(EXIT_CONFIG)
    except ProvisionCancelled as ex:
        print(f'CANCELLED: {ex}', file=sys.stderr)
        sys.exit(EXIT_CANCELLED)
    except ProvisionError as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Provisioning failed: {}', ex)
        sys.exit(EXIT_FATAL)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled vcprov error: {}', ex)
        sys.exit(EXIT_FATAL)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(EXIT_OK)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(EXIT_OK)


def _config_verbosity(argv: list[str]) -> int:
    config_value = None
    for flag in ('--config', '-c'):
        if flag in argv:
            try:
                config_value = argv[argv.index(flag) + 1]
            except IndexError:
                pass
            break
    path = _cfg_path(config_value)
    if not path.exists():
        return 1
    try:
        raw = tomllib.loads(path.read_text(encoding='utf-8'))
        return int(raw.get('verbosity', 1))
    except Exception:
        return 1


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
