"""Rendering of the client configuration file and first-run attributes."""

from __future__ import annotations

import json

from loguru import logger

from .config import ChefConfig
from .output import OutputSink

log = logger


def render_client_rb(chef: ChefConfig) -> str:
    """Render ``client.rb`` for the given settings."""
    lines = [
        '',
        'log_location            STDOUT',
        f'chef_server_url         "{chef.server_url}"',
        f'node_name               "{chef.node_name}"',
    ]
    if chef.use_policyfile:
        lines += [
            'use_policyfile true',
            f'policy_group     "{chef.policy_group}"',
            f'policy_name      "{chef.policy_name}"',
        ]
    if chef.http_proxy:
        lines += [
            f'http_proxy          "{chef.http_proxy}"',
            f'ENV[\'http_proxy\'] = "{chef.http_proxy}"',
            f'ENV[\'HTTP_PROXY\'] = "{chef.http_proxy}"',
        ]
    if chef.https_proxy:
        lines += [
            f'https_proxy          "{chef.https_proxy}"',
            f'ENV[\'https_proxy\'] = "{chef.https_proxy}"',
            f'ENV[\'HTTPS_PROXY\'] = "{chef.https_proxy}"',
        ]
    if chef.no_proxy:
        joined = ','.join(chef.no_proxy)
        lines += [
            f'no_proxy          "{joined}"',
            f'ENV[\'no_proxy\'] = "{joined}"',
        ]
    if chef.ssl_verify_mode:
        mode = chef.ssl_verify_mode
        if not mode.startswith(':'):
            mode = f':{mode}'
        lines.append(f'ssl_verify_mode  {mode}')
    if chef.disable_reporting:
        lines.append('enable_reporting false')
    if chef.client_options:
        lines += list(chef.client_options)
    return '\n'.join(lines) + '\n'


def first_boot_payload(chef: ChefConfig, sink: OutputSink | None = None) -> dict:
    """Build the first-run node attributes.

    The explicit run list wins over a ``run_list`` key in the attributes,
    except under policyfile mode where no run list is injected.
    """
    fb = dict(chef.attributes or {})
    if 'run_list' in fb:
        msg = (
            "Found a 'run_list' specified in the configured attributes! "
            'This value will be overwritten by the value of the `run_list` argument!'
        )
        log.warning(msg)
        if sink is not None:
            sink.emit(f'WARNING: {msg}')
    if not chef.use_policyfile:
        fb['run_list'] = list(chef.run_list)
    return fb


def render_first_boot(chef: ChefConfig, sink: OutputSink | None = None) -> str:
    return json.dumps(first_boot_payload(chef, sink))
