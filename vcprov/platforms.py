"""Per-OS-family command templates and paths.

One :class:`OSProfile` is selected per run, after the guest family probe,
and is treated as immutable configuration from then on.
"""

from __future__ import annotations

import base64
import posixpath
import shlex
from dataclasses import dataclass, replace

from .errors import ConfigError

CLIENT_RB = 'client.rb'
FIRST_BOOT = 'first-boot.json'
SECRET_KEY = 'encrypted_data_bag_secret'
OMNITRUCK_INSTALL_URL = 'https://omnitruck.chef.io/install.sh'
OMNITRUCK_WINDOWS_URL = (
    'https://omnitruck.chef.io/{channel}/chef/download'
    '?p=windows&pv=2012&m=x86_64&v={version}'
)

GUEST_FAMILY_TO_OS = {
    'linuxGuest': 'linux',
    'solarisGuest': 'linux',
    'windowsGuest': 'windows',
}

WINDOWS_INSTALL_SCRIPT = """
$url = '{url}'
$dest = [System.IO.Path]::GetTempFileName()
$dest = [System.IO.Path]::ChangeExtension($dest, ".msi")
$downloader = New-Object System.Net.WebClient

$http_proxy = '{http_proxy}'
if ($http_proxy -ne '') {{
  $no_proxy = '{no_proxy}'
  if ($no_proxy -eq '') {{
    $no_proxy = "127.0.0.1"
  }}
  $proxy = New-Object System.Net.WebProxy($http_proxy, $true, $no_proxy.Split(','))
  $downloader.proxy = $proxy
}}

Write-Host 'Downloading Chef Client...'
$downloader.DownloadFile($url, $dest)

Write-Host 'Installing Chef Client...'
Start-Process -FilePath msiexec -ArgumentList /qn, /i, $dest -Wait
"""


@dataclass(frozen=True)
class OSProfile:
    name: str
    conf_dir: str
    temp_dir: str
    chef_cmd: str
    knife_cmd: str
    gem_cmd: str
    no_output: str
    shell: str
    use_sudo: bool = False

    def path(self, *parts: str) -> str:
        return posixpath.join(self.conf_dir, *parts)

    def sudo(self, cmd: str) -> str:
        return f'sudo {cmd}' if self.use_sudo else cmd

    def wrap(self, command_line: str, log_path: str) -> tuple[str, str]:
        """Return ``(program, arguments)`` running ``command_line`` in a shell.

        Combined stdout/stderr is redirected to ``log_path`` on the guest.
        """
        if self.name == 'windows':
            script = (
                f"& {{ {command_line} }} *> '{log_path}'\r\n"
                'exit $LASTEXITCODE'
            )
            encoded = base64.b64encode(script.encode('utf-16-le')).decode('ascii')
            return (
                self.shell,
                '-NoProfile -NonInteractive -ExecutionPolicy Bypass '
                f'-EncodedCommand {encoded}',
            )
        inner = f'( {command_line} ) > {shlex.quote(log_path)} 2>&1'
        return self.shell, f'-c {shlex.quote(inner)}'

    def mkdir_cmd(self, path: str) -> str:
        if self.name == 'windows':
            return f'cmd /c if not exist "{path}" mkdir "{path}"'
        return self.sudo(f'mkdir -p {shlex.quote(path)}')

    def extract_cmd(self, archive: str, dest: str) -> str:
        if self.name == 'windows':
            return (
                f'cmd /c if not exist "{dest}" mkdir "{dest}" '
                f'&& tar -xf "{archive}" -C "{dest}" && del /F /Q "{archive}"'
            )
        return (
            f'mkdir -p {shlex.quote(dest)} && tar -xf {shlex.quote(archive)} '
            f'-C {shlex.quote(dest)} && rm -f {shlex.quote(archive)}'
        )

    def script_path(self) -> str:
        ext = 'ps1' if self.name == 'windows' else 'sh'
        return posixpath.join(self.temp_dir, f'vcprov-script.{ext}')

    def script_cmd(self, path: str) -> str:
        if self.name == 'windows':
            return f'powershell -NoProfile -ExecutionPolicy Bypass -File {path}'
        return f'sh {shlex.quote(path)}'

    def cleanup_key_cmd(self, user_name: str) -> str:
        key = self.path(f'{user_name}.pem')
        if self.name == 'windows':
            win_key = key.replace('/', '\\')
            return f'cmd /c del /F /Q "{win_key}"'
        return self.sudo(f'rm -f {shlex.quote(key)}')

    def knife_options(self, user_name: str) -> str:
        return '-c {} -u {} --key {}'.format(
            self.path(CLIENT_RB), user_name, self.path(f'{user_name}.pem')
        )

    def fetch_certificates_cmd(self) -> str:
        return self.sudo(f'{self.knife_cmd} ssl fetch -c {self.path(CLIENT_RB)}')

    def node_show_cmd(self, node_name: str, user_name: str) -> str:
        return self.sudo(
            f'{self.knife_cmd} node show {node_name} '
            f'{self.knife_options(user_name)} {self.no_output}'
        )

    def client_show_cmd(self, node_name: str, user_name: str) -> str:
        return self.sudo(
            f'{self.knife_cmd} client show {node_name} '
            f'{self.knife_options(user_name)} {self.no_output}'
        )

    def node_delete_cmd(self, node_name: str, user_name: str) -> str:
        return self.sudo(
            f'{self.knife_cmd} node delete {node_name} -y '
            f'{self.knife_options(user_name)}'
        )

    def client_delete_cmd(self, node_name: str, user_name: str) -> str:
        return self.sudo(
            f'{self.knife_cmd} client delete {node_name} -y '
            f'{self.knife_options(user_name)}'
        )

    def client_create_cmd(self, node_name: str, user_name: str) -> str:
        return self.sudo(
            f'{self.knife_cmd} client create {node_name} -d '
            f'-f {self.path("client.pem")} {self.knife_options(user_name)}'
        )

    def gem_install_cmd(self, gem: str) -> str:
        return self.sudo(f'{self.gem_cmd} install {gem}')

    def vault_remove_cmd(
        self, vault: str, item: str, node_name: str, user_name: str
    ) -> str:
        return self.sudo(
            f'{self.knife_cmd} vault remove {vault} {item} -C "{node_name}" '
            f'-M client {self.knife_options(user_name)}'
        )

    def vault_update_cmd(
        self, vault: str, item: str, node_name: str, user_name: str
    ) -> str:
        return self.sudo(
            f'{self.knife_cmd} vault update {vault} {item} -C {node_name} '
            f'-M client {self.knife_options(user_name)}'
        )

    def client_run_cmd(
        self,
        *,
        use_policyfile: bool,
        named_run_list: str,
        environment: str,
    ) -> str:
        fb = self.path(FIRST_BOOT)
        # Policyfiles do not support environments, so never pass -E with them.
        if use_policyfile and not named_run_list:
            cmd = f'{self.chef_cmd} -j "{fb}"'
        elif use_policyfile:
            cmd = f'{self.chef_cmd} -j "{fb}" -n "{named_run_list}"'
        else:
            cmd = f'{self.chef_cmd} -j "{fb}" -E "{environment}"'
        return self.sudo(cmd)

    def install_steps(
        self,
        *,
        channel: str,
        version: str,
        installer_url: str,
        http_proxy: str,
        https_proxy: str,
        no_proxy: tuple[str, ...],
    ) -> tuple[str | None, str, str]:
        """Return ``(script_path, script_content, command)`` for installing.

        ``script_path`` is None when the command needs no uploaded script.
        """
        if self.name == 'windows':
            url = installer_url or OMNITRUCK_WINDOWS_URL.format(
                channel=channel, version=version or 'latest'
            )
            script = posixpath.join(self.temp_dir, 'ChefClient.ps1')
            content = WINDOWS_INSTALL_SCRIPT.format(
                url=url,
                http_proxy=http_proxy,
                no_proxy=','.join(no_proxy),
            )
            cmd = f'powershell -NoProfile -ExecutionPolicy Bypass -File {script}'
            return script, content, cmd
        env = ''
        if http_proxy:
            env += f'http_proxy={shlex.quote(http_proxy)} '
        if https_proxy:
            env += f'https_proxy={shlex.quote(https_proxy)} '
        if no_proxy:
            env += f'no_proxy={shlex.quote(",".join(no_proxy))} '
        url = installer_url or OMNITRUCK_INSTALL_URL
        version_arg = f' -v {shlex.quote(version)}' if version else ''
        cmd = (
            f'cd {self.temp_dir} && {env}curl -LO {url} && '
            + self.sudo(f'{env}bash ./install.sh{version_arg} -c {channel}')
            + ' && rm -f install.sh'
        )
        return None, '', cmd


LINUX = OSProfile(
    name='linux',
    conf_dir='/etc/chef',
    temp_dir='/tmp',
    chef_cmd='chef-client',
    knife_cmd='knife',
    gem_cmd='/opt/chef/embedded/bin/gem',
    no_output='> /dev/null 2>&1',
    shell='/bin/sh',
)

WINDOWS = OSProfile(
    name='windows',
    conf_dir='C:/chef',
    temp_dir='C:/Windows/Temp',
    chef_cmd='chef-client',
    knife_cmd='knife',
    gem_cmd='C:/opscode/chef/embedded/bin/gem',
    no_output='> $null 2>&1',
    shell='C:\\Windows\\System32\\WindowsPowerShell\\v1.0\\powershell.exe',
)

PROFILES = {p.name: p for p in (LINUX, WINDOWS)}


def select_profile(
    os_type: str,
    guest_family: str | None = None,
    *,
    guest_user: str = '',
    prevent_sudo: bool = False,
) -> OSProfile:
    """Pick the profile from an explicit override or the probed guest family."""
    name = (os_type or '').strip().lower()
    if not name:
        name = GUEST_FAMILY_TO_OS.get(guest_family or '', '')
        if not name:
            raise ConfigError(f'unsupported guest OS family: {guest_family!r}')
    if name not in PROFILES:
        raise ConfigError(f'unsupported os type: {name!r}')
    profile = PROFILES[name]
    if profile.name == 'linux':
        profile = replace(
            profile, use_sudo=not prevent_sudo and guest_user != 'root'
        )
    return profile
