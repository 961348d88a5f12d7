"""Typed provisioning configuration and its validating TOML decoder.

The TOML layout mirrors the dataclass layout: one table per section. All
config objects are frozen; decode once, then lend the result to every
stage read-only.
"""

from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigError
from .exitcodes import ExitCodePolicy
from .retry import RetryPolicy
from .util import expand, mask

DEFAULT_ENVIRONMENT = '_default'
OS_TYPES = ('linux', 'windows')


@dataclass(frozen=True)
class VSphereConfig:
    host: str = ''
    user: str = ''
    password: str = ''
    insecure: bool = True
    datacenter: str = ''
    vm_name: str = ''


@dataclass(frozen=True)
class GuestConfig:
    user: str = ''
    password: str = ''
    timeout: float = 300
    interval: float = 15
    os_type: str = ''


@dataclass(frozen=True)
class ConnectConfig:
    attempts: int = 4
    interval: float = 15


@dataclass(frozen=True)
class ChefConfig:
    node_name: str = ''
    server_url: str = ''
    user_name: str = ''
    user_key: str = ''
    secret_key: str = ''
    attributes: Mapping[str, Any] | None = None
    vaults: Mapping[str, tuple[str, ...]] | None = None
    channel: str = 'stable'
    version: str = ''
    installer_url: str = ''
    client_options: tuple[str, ...] = ()
    disable_reporting: bool = False
    environment: str = DEFAULT_ENVIRONMENT
    fetch_chef_certificates: bool = False
    log_to_file: bool = False
    use_policyfile: bool = False
    policy_group: str = ''
    policy_name: str = ''
    named_run_list: str = ''
    http_proxy: str = ''
    https_proxy: str = ''
    no_proxy: tuple[str, ...] = ()
    ohai_hints: tuple[str, ...] = ()
    prevent_sudo: bool = False
    recreate_client: bool = False
    run_list: tuple[str, ...] = ()
    skip_install: bool = False
    skip_register: bool = False
    ssl_verify_mode: str = ''


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 0
    wait_for_retry: float = 30
    retry_on_exit_code: tuple[int, ...] | None = None


@dataclass(frozen=True)
class ProvisionConfig:
    vsphere: VSphereConfig = field(default_factory=VSphereConfig)
    guest: GuestConfig = field(default_factory=GuestConfig)
    connect: ConnectConfig = field(default_factory=ConnectConfig)
    chef: ChefConfig = field(default_factory=ChefConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    verbosity: int = 1

    @property
    def connect_policy(self) -> RetryPolicy:
        return RetryPolicy(
            interval=self.connect.interval, max_attempts=self.connect.attempts
        )

    @property
    def guest_policy(self) -> RetryPolicy:
        return RetryPolicy.from_timeout(self.guest.timeout, self.guest.interval)

    @property
    def exit_code_policy(self) -> ExitCodePolicy:
        return ExitCodePolicy.from_codes(self.retry.retry_on_exit_code)


class SectionDecoder:
    """Pull typed values out of one TOML table, collecting every problem."""

    def __init__(
        self,
        raw: Mapping[str, Any],
        section: str,
        problems: list[str],
        env: Mapping[str, str] | None = None,
    ):
        body = raw.get(section, {})
        if not isinstance(body, Mapping):
            problems.append(f'[{section}] must be a table')
            body = {}
        self.body = body
        self.section = section
        self.problems = problems
        self.env = os.environ if env is None else env

    def _lookup(self, key: str, default: Any, env_key: str | None) -> Any:
        if key in self.body:
            return self.body[key]
        if env_key and self.env.get(env_key):
            return self.env[env_key]
        return default

    def _bad(self, key: str, expect: str, value: Any) -> None:
        self.problems.append(
            f'{self.section}.{key} must be {expect}, got {type(value).__name__}'
        )

    def string(
        self,
        key: str,
        default: str = '',
        *,
        env: str | None = None,
        required: bool = False,
    ) -> str:
        value = self._lookup(key, default, env)
        if not isinstance(value, str):
            self._bad(key, 'a string', value)
            return default
        if required and not value.strip():
            self.problems.append(f'{self.section}.{key}: required field is not set')
        return value

    def boolean(self, key: str, default: bool = False) -> bool:
        value = self._lookup(key, default, None)
        if isinstance(value, str) and value.lower() in {'true', 'false'}:
            return value.lower() == 'true'
        if not isinstance(value, bool):
            self._bad(key, 'a boolean', value)
            return default
        return value

    def integer(
        self, key: str, default: int, *, env: str | None = None, minimum: int = 0
    ) -> int:
        value = self._lookup(key, default, env)
        if isinstance(value, str):
            try:
                value = int(value)
            except ValueError:
                pass
        if isinstance(value, bool) or not isinstance(value, int):
            self._bad(key, 'an integer', value)
            return default
        if value < minimum:
            self.problems.append(
                f'{self.section}.{key} must be >= {minimum}, got {value}'
            )
        return value

    def number(
        self, key: str, default: float, *, env: str | None = None
    ) -> float:
        value = self._lookup(key, default, env)
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError:
                pass
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self._bad(key, 'a number', value)
            return default
        if value < 0:
            self.problems.append(f'{self.section}.{key} must be >= 0, got {value}')
        return value

    def string_list(self, key: str) -> tuple[str, ...]:
        value = self.body.get(key, [])
        if not isinstance(value, list):
            self._bad(key, 'a list of strings', value)
            return ()
        bad = [v for v in value if not isinstance(v, str)]
        if bad:
            self.problems.append(
                f'{self.section}.{key} must only contain strings, got {bad!r}'
            )
        return tuple(v for v in value if isinstance(v, str))

    def int_list(self, key: str) -> tuple[int, ...] | None:
        if key not in self.body:
            return None
        value = self.body[key]
        if not isinstance(value, list):
            self._bad(key, 'a list of integers', value)
            return None
        bad = [v for v in value if isinstance(v, bool) or not isinstance(v, int)]
        if bad:
            self.problems.append(
                f'{self.section}.{key} must only contain integers, got {bad!r}'
            )
        return tuple(
            v for v in value if isinstance(v, int) and not isinstance(v, bool)
        )


def _read_secret(
    dec: SectionDecoder, key: str, base_dir: Path | None
) -> str:
    inline = dec.string(key)
    fpath = dec.string(f'{key}_file')
    if inline and fpath:
        dec.problems.append(
            f'{dec.section}: set only one of {key!r} and {key + "_file"!r}'
        )
    if fpath:
        path = Path(expand(fpath))
        if base_dir is not None and not path.is_absolute():
            path = base_dir / path
        try:
            return path.read_text(encoding='utf-8')
        except OSError as ex:
            dec.problems.append(f'{dec.section}.{key}_file: cannot read {path}: {ex}')
            return ''
    return inline


def _decode_json_object(dec: SectionDecoder, key: str) -> dict | None:
    text = dec.string(key)
    if not text.strip():
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as ex:
        dec.problems.append(f'error parsing {dec.section}.{key}: {ex}')
        return None
    if not isinstance(data, dict):
        dec.problems.append(f'{dec.section}.{key} must be a JSON object')
        return None
    return data


def _decode_vaults(dec: SectionDecoder) -> dict[str, tuple[str, ...]] | None:
    data = _decode_json_object(dec, 'vault_json')
    if data is None:
        return None
    vaults: dict[str, tuple[str, ...]] = {}
    for vault, items in data.items():
        if isinstance(items, str):
            vaults[vault] = (items,)
        elif isinstance(items, list) and all(isinstance(i, str) for i in items):
            vaults[vault] = tuple(items)
        else:
            dec.problems.append(
                f'chef.vault_json[{vault!r}] must be a string or a list of '
                f'strings, got {items!r}'
            )
    return vaults


def decode_vsphere(
    raw: Mapping[str, Any],
    problems: list[str],
    env: Mapping[str, str] | None = None,
) -> tuple[VSphereConfig, GuestConfig, ConnectConfig]:
    """Decode the target sections shared by every provisioner."""
    vs = SectionDecoder(raw, 'vsphere', problems, env)
    vsphere = VSphereConfig(
        host=vs.string('host', env='VC_VSPHERE_HOST', required=True),
        user=vs.string('user', env='VC_VSPHERE_USERNAME', required=True),
        password=vs.string('password', env='VC_VSPHERE_PASSWORD', required=True),
        insecure=vs.boolean('insecure', True),
        datacenter=vs.string('datacenter'),
        vm_name=vs.string('vm_name', required=True),
    )
    gs = SectionDecoder(raw, 'guest', problems, env)
    guest = GuestConfig(
        user=gs.string('user', env='VC_VSPHERE_GUEST_USERNAME', required=True),
        password=gs.string(
            'password', env='VC_VSPHERE_GUEST_PASSWORD', required=True
        ),
        timeout=gs.number('timeout', 300, env='VC_RX_TIMEOUT'),
        interval=gs.number('interval', 15, env='VC_RX_INTERVAL'),
        os_type=gs.string('os_type').strip().lower(),
    )
    if guest.os_type and guest.os_type not in OS_TYPES:
        problems.append(
            f'guest.os_type must be one of {", ".join(OS_TYPES)}, got {guest.os_type!r}'
        )
    cs = SectionDecoder(raw, 'connect', problems, env)
    connect = ConnectConfig(
        attempts=cs.integer('attempts', 4, minimum=1),
        interval=cs.number('interval', 15),
    )
    return vsphere, guest, connect


def decode_config(
    raw: Mapping[str, Any],
    *,
    env: Mapping[str, str] | None = None,
    base_dir: Path | None = None,
) -> ProvisionConfig:
    """Validate raw TOML data and build a :class:`ProvisionConfig`.

    Raises:
        ConfigError: listing every problem found, never just the first.
    """
    problems: list[str] = []
    vsphere, guest, connect = decode_vsphere(raw, problems, env)

    ch = SectionDecoder(raw, 'chef', problems, env)
    use_policyfile = ch.boolean('use_policyfile')
    server_url = ch.string('server_url', required=True)
    if server_url:
        server_url = server_url.rstrip('/') + '/'
    ssl_verify_mode = ch.string('ssl_verify_mode')
    if ssl_verify_mode and not ssl_verify_mode.startswith(':'):
        ssl_verify_mode = f':{ssl_verify_mode}'
    run_list = ch.string_list('run_list')
    chef = ChefConfig(
        node_name=ch.string('node_name', required=True),
        server_url=server_url,
        user_name=ch.string('user_name', required=True),
        user_key=_read_secret(ch, 'user_key', base_dir),
        secret_key=_read_secret(ch, 'secret_key', base_dir),
        attributes=_decode_json_object(ch, 'attributes_json'),
        vaults=_decode_vaults(ch),
        channel=ch.string('channel', 'stable'),
        version=ch.string('version'),
        installer_url=ch.string('installer_url'),
        client_options=ch.string_list('client_options'),
        disable_reporting=ch.boolean('disable_reporting'),
        environment=ch.string('environment', DEFAULT_ENVIRONMENT),
        fetch_chef_certificates=ch.boolean('fetch_chef_certificates'),
        log_to_file=ch.boolean('log_to_file'),
        use_policyfile=use_policyfile,
        policy_group=ch.string('policy_group'),
        policy_name=ch.string('policy_name'),
        named_run_list=ch.string('named_run_list'),
        http_proxy=ch.string('http_proxy'),
        https_proxy=ch.string('https_proxy'),
        no_proxy=ch.string_list('no_proxy'),
        ohai_hints=tuple(expand(h) for h in ch.string_list('ohai_hints')),
        prevent_sudo=ch.boolean('prevent_sudo'),
        recreate_client=ch.boolean('recreate_client'),
        run_list=run_list,
        skip_install=ch.boolean('skip_install'),
        skip_register=ch.boolean('skip_register'),
        ssl_verify_mode=ssl_verify_mode,
    )
    if not chef.user_key:
        problems.append('chef.user_key: required field is not set')
    if not use_policyfile and 'run_list' not in ch.body:
        problems.append('"run_list": required field is not set')
    if use_policyfile and not chef.policy_name:
        problems.append('using policyfile, but "policy_name" not set')
    if use_policyfile and not chef.policy_group:
        problems.append('using policyfile, but "policy_group" not set')

    rt = SectionDecoder(raw, 'retry', problems, env)
    retry_cfg = RetryConfig(
        max_retries=rt.integer('max_retries', 0),
        wait_for_retry=rt.number('wait_for_retry', 30),
        retry_on_exit_code=rt.int_list('retry_on_exit_code'),
    )
    if retry_cfg.retry_on_exit_code and 0 in retry_cfg.retry_on_exit_code:
        problems.append('retry.retry_on_exit_code must not contain 0')

    verbosity = raw.get('verbosity', 1)
    if isinstance(verbosity, bool) or not isinstance(verbosity, int):
        problems.append('verbosity must be an integer')
        verbosity = 1

    if problems:
        raise ConfigError(problems)
    return ProvisionConfig(
        vsphere=vsphere,
        guest=guest,
        connect=connect,
        chef=chef,
        retry=retry_cfg,
        verbosity=verbosity,
    )


def load_raw(path: Path) -> dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding='utf-8'))
    except tomllib.TOMLDecodeError as ex:
        raise ConfigError(f'{path}: invalid TOML: {ex}') from ex


def load(path: Path, *, env: Mapping[str, str] | None = None) -> ProvisionConfig:
    path = Path(path)
    return decode_config(load_raw(path), env=env, base_dir=path.parent)


def summarize(cfg: ProvisionConfig) -> str:
    """Render the resolved config with secrets masked."""
    policy = cfg.exit_code_policy
    lines = [
        f'vsphere: {cfg.vsphere.user}@{cfg.vsphere.host} '
        f'password={mask(cfg.vsphere.password)} insecure={cfg.vsphere.insecure}',
        f'target: vm={cfg.vsphere.vm_name} datacenter={cfg.vsphere.datacenter or "(default)"}',
        f'guest: user={cfg.guest.user} password={mask(cfg.guest.password)} '
        f'os_type={cfg.guest.os_type or "(probe)"} '
        f'attempts={cfg.guest_policy.max_attempts} interval={cfg.guest.interval}s',
        f'connect: attempts={cfg.connect.attempts} interval={cfg.connect.interval}s',
        f'chef: node={cfg.chef.node_name} server={cfg.chef.server_url} '
        f'user={cfg.chef.user_name} key={mask(cfg.chef.user_key)}',
    ]
    if cfg.chef.use_policyfile:
        lines.append(
            f'policy: group={cfg.chef.policy_group} name={cfg.chef.policy_name} '
            f'named_run_list={cfg.chef.named_run_list or "(none)"}'
        )
    else:
        lines.append(
            f'run_list: {", ".join(cfg.chef.run_list) or "(empty)"} '
            f'environment={cfg.chef.environment}'
        )
    lines.append(
        f'retry: max_retries={cfg.retry.max_retries} '
        f'wait={cfg.retry.wait_for_retry}s '
        f'retry_codes={sorted(policy.retry_codes)}'
    )
    return '\n'.join(lines)


CONFIG_TEMPLATE = """\
# vcprov provisioning config
# Credentials left empty fall back to VC_VSPHERE_* environment variables.

[vsphere]
host = ""
user = ""
password = ""
insecure = true
datacenter = ""
vm_name = ""

[guest]
user = ""
password = ""
timeout = 300
interval = 15
# os_type = "windows"  # default: probe the guest family

[connect]
attempts = 4
interval = 15

[chef]
node_name = ""
server_url = ""
user_name = ""
user_key_file = ""
environment = "_default"
run_list = []
# attributes_json = '{"app": {"port": 8080}}'
# vault_json = '{"secrets": ["db"]}'

[retry]
max_retries = 0
wait_for_retry = 30
# retry_on_exit_code = [35, 37, 213]
"""
