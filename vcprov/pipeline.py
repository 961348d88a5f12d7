"""Fixed-order provisioning stages and the executor that runs them."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from loguru import logger

from .cleanup import CleanupGuard
from .config import ProvisionConfig
from .errors import ProvisionCancelled, ProvisionError, StageError
from .exitcodes import run_with_exit_code_retries
from .materialize import render_client_rb, render_first_boot
from .output import FileSink, OutputSink
from .platforms import CLIENT_RB, FIRST_BOOT, SECRET_KEY, OSProfile
from .results import ProvisionResult
from .retry import CancelToken
from .transfer import GuestTransfer

log = logger


@dataclass
class StageContext:
    cfg: ProvisionConfig
    transfer: GuestTransfer
    cleanup: CleanupGuard
    sink: OutputSink
    cancel: CancelToken
    result: ProvisionResult
    sleep: Callable[[float], None] | None = None

    @property
    def profile(self) -> OSProfile:
        return self.transfer.profile


@dataclass(frozen=True)
class PipelineStage:
    name: str
    action: Callable[[StageContext], None]
    predicate: Callable[[ProvisionConfig], bool] = lambda cfg: True
    banner: str = ''


def install_client(ctx: StageContext) -> None:
    chef = ctx.cfg.chef
    script_path, content, cmd = ctx.profile.install_steps(
        channel=chef.channel,
        version=chef.version,
        installer_url=chef.installer_url,
        http_proxy=chef.http_proxy,
        https_proxy=chef.https_proxy,
        no_proxy=chef.no_proxy,
    )
    if script_path is not None:
        try:
            ctx.transfer.upload(script_path, content)
        except ProvisionError as ex:
            raise ProvisionError(f'uploading {script_path} failed: {ex}') from ex
    ctx.transfer.run_checked(cmd)


def _upload(ctx: StageContext, path: str, data: bytes | str, what: str) -> None:
    try:
        ctx.transfer.upload(path, data)
    except ProvisionError as ex:
        raise ProvisionError(f'uploading {what} failed: {ex}') from ex


def create_config_files(ctx: StageContext) -> None:
    """Write keys, ``client.rb``, ``first-boot.json`` and ohai hints."""
    chef = ctx.cfg.chef
    p = ctx.profile
    t = ctx.transfer
    t.run_checked(p.mkdir_cmd(p.conf_dir))
    if p.use_sudo:
        # The guest user uploads files, so open the directory up temporarily.
        t.run_checked(p.sudo(f'chmod 777 {p.conf_dir}'))

    if chef.ohai_hints:
        hints_dir = p.path('ohai', 'hints')
        t.run_checked(p.mkdir_cmd(hints_dir))
        if p.use_sudo:
            t.run_checked(p.sudo(f'chmod 777 {hints_dir}'))
        for hint in chef.ohai_hints:
            name = Path(hint).name
            try:
                t.upload_source(hint, f'{hints_dir}/{name}')
            except (OSError, ProvisionError) as ex:
                raise ProvisionError(f'uploading {name} failed: {ex}') from ex

    _upload(ctx, p.path(f'{chef.user_name}.pem'), chef.user_key, 'user key')
    if chef.secret_key:
        _upload(ctx, p.path(SECRET_KEY), chef.secret_key, SECRET_KEY)
    _upload(ctx, p.path(CLIENT_RB), render_client_rb(chef), CLIENT_RB)
    _upload(ctx, p.path(FIRST_BOOT), render_first_boot(chef, ctx.sink), FIRST_BOOT)

    if p.use_sudo:
        t.run_checked(p.sudo(f'chmod 755 {p.conf_dir}'))
        t.run_checked(p.sudo(f'chown -R root:root {p.conf_dir}'))


def fetch_certificates(ctx: StageContext) -> None:
    ctx.transfer.run_checked(ctx.profile.fetch_certificates_cmd())


def register_client(ctx: StageContext) -> None:
    """Create a fresh client identity, reconciling any existing records."""
    chef = ctx.cfg.chef
    p = ctx.profile
    t = ctx.transfer
    node = t.succeeds(p.node_show_cmd(chef.node_name, chef.user_name))
    client = t.succeeds(p.client_show_cmd(chef.node_name, chef.user_name))
    if client and not chef.recreate_client:
        raise ProvisionError(
            f'chef client {chef.node_name!r} already exists, set '
            'recreate_client=true to automatically recreate the client'
        )
    if node:
        t.run_checked(p.node_delete_cmd(chef.node_name, chef.user_name))
    if client:
        t.run_checked(p.client_delete_cmd(chef.node_name, chef.user_name))
    t.run_checked(p.client_create_cmd(chef.node_name, chef.user_name))


def configure_vaults(ctx: StageContext) -> None:
    chef = ctx.cfg.chef
    p = ctx.profile
    t = ctx.transfer
    vaults = chef.vaults or {}
    t.run_checked(p.gem_install_cmd('chef-vault'))
    # A recreated client has new keys; drop the old client from every item
    # first or the new one cannot decrypt the vault.
    if chef.recreate_client:
        for vault, items in vaults.items():
            for item in items:
                t.run_checked(
                    p.vault_remove_cmd(vault, item, chef.node_name, chef.user_name)
                )
    for vault, items in vaults.items():
        for item in items:
            t.run_checked(
                p.vault_update_cmd(vault, item, chef.node_name, chef.user_name)
            )


def cleanup_user_key(ctx: StageContext) -> None:
    ctx.cleanup()


def run_client(ctx: StageContext) -> None:
    chef = ctx.cfg.chef
    ctx.cleanup()
    cmd = ctx.profile.client_run_cmd(
        use_policyfile=chef.use_policyfile,
        named_run_list=chef.named_run_list,
        environment=chef.environment,
    )
    runner = ctx.transfer
    if chef.log_to_file:
        file_sink = FileSink.for_node(chef.node_name)
        ctx.sink.emit(f'Writing Chef Client output to {file_sink.path}')
        runner = GuestTransfer(ctx.transfer.channel, ctx.profile, file_sink)
    res = run_with_exit_code_retries(
        lambda: runner.run(cmd),
        ctx.cfg.exit_code_policy,
        max_retries=ctx.cfg.retry.max_retries,
        wait_s=ctx.cfg.retry.wait_for_retry,
        sink=ctx.sink,
        cancel=ctx.cancel,
        sleep=ctx.sleep,
    )
    ctx.result.client_exit_code = res.code


STAGES: tuple[PipelineStage, ...] = (
    PipelineStage(
        'install-client',
        install_client,
        lambda cfg: not cfg.chef.skip_install,
        'Installing Chef Client...',
    ),
    PipelineStage(
        'create-config-files',
        create_config_files,
        banner='Creating configuration files...',
    ),
    PipelineStage(
        'fetch-certificates',
        fetch_certificates,
        lambda cfg: not cfg.chef.skip_register and cfg.chef.fetch_chef_certificates,
        'Fetch Chef certificates...',
    ),
    PipelineStage(
        'register-client',
        register_client,
        lambda cfg: not cfg.chef.skip_register,
        'Generate the private key...',
    ),
    PipelineStage(
        'configure-vaults',
        configure_vaults,
        lambda cfg: bool(cfg.chef.vaults),
        'Configure Chef vaults...',
    ),
    PipelineStage('cleanup-user-key', cleanup_user_key),
    PipelineStage(
        'run-client',
        run_client,
        banner='Starting initial Chef-Client run...',
    ),
)


def run_pipeline(
    stages: tuple[PipelineStage, ...] | list[PipelineStage],
    ctx: StageContext,
) -> ProvisionResult:
    """Run ``stages`` in order, aborting on the first failure.

    Already-applied stages are not rolled back.
    """
    for stage in stages:
        ctx.cancel.check()
        if not stage.predicate(ctx.cfg):
            log.debug('Skipping stage {}', stage.name)
            ctx.result.stages_skipped.append(stage.name)
            continue
        log.debug('Running stage {}', stage.name)
        if stage.banner:
            ctx.sink.emit(stage.banner)
        try:
            stage.action(ctx)
        except ProvisionCancelled:
            raise
        except Exception as ex:
            raise StageError(stage.name, ex) from ex
        ctx.result.stages_run.append(stage.name)
    ctx.result.cleanup_done = ctx.cleanup.done
    return ctx.result
