from __future__ import annotations

import signal
from pathlib import Path
from typing import Any

import scriptconfig as scfg
from loguru import logger

from ..config import ProvisionConfig, load, load_raw
from ..errors import ConfigError
from ..retry import CancelToken

log = logger

DEFAULT_CONFIG_NAME = '.vcprov.toml'


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help=f'Path to config TOML (default: {DEFAULT_CONFIG_NAME}).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )


def _cfg_path(p: str | None) -> Path:
    return Path(p or DEFAULT_CONFIG_NAME).resolve()


def _require_cfg_path(config_path: str | None) -> Path:
    path = _cfg_path(config_path)
    if not path.exists():
        raise ConfigError(
            f'Config not found: {path}. Run: vcprov config init --config {path}'
        )
    return path


def _load_cfg(config_path: str | None) -> ProvisionConfig:
    return load(_require_cfg_path(config_path))


def _load_raw(config_path: str | None) -> dict[str, Any]:
    return load_raw(_require_cfg_path(config_path))


def _install_cancel_handlers(cancel: CancelToken) -> None:
    """Turn SIGINT/SIGTERM into a cooperative cancellation of the run."""

    def _handler(signum, frame):
        log.warning('Received signal {}; cancelling run', signum)
        cancel.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # Not on the main thread.
            log.debug('Cannot install handler for signal {}', sig)


__all__ = [name for name in globals() if not name.startswith('__')]
