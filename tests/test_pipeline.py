from __future__ import annotations

import json
from pathlib import Path

import pytest

from _fakes import ChefServer, FakeChannel, Sleeps, make_cfg
from vcprov.cleanup import CleanupGuard
from vcprov.errors import ProvisionCancelled, StageError
from vcprov.orchestrator import user_key_remover
from vcprov.output import ListSink
from vcprov.pipeline import (
    STAGES,
    PipelineStage,
    StageContext,
    register_client,
    run_pipeline,
)
from vcprov.platforms import WINDOWS, select_profile
from vcprov.results import ProvisionResult
from vcprov.retry import CancelToken
from vcprov.transfer import GuestTransfer


def _ctx(cfg, channel, profile=WINDOWS, sink=None):
    sink = sink or ListSink()
    cancel = CancelToken()
    channel.cancel = cancel
    remover = user_key_remover(channel, profile, cfg.chef.user_name, sink)
    return StageContext(
        cfg=cfg,
        transfer=GuestTransfer(channel, profile, sink),
        cleanup=CleanupGuard(remover, sink),
        sink=sink,
        cancel=cancel,
        result=ProvisionResult(os_type=profile.name),
        sleep=Sleeps(),
    )


def _knife(channel, verb):
    return [c for c in channel.commands if f'knife {verb}' in c]


def test_stage_order_is_fixed() -> None:
    assert [s.name for s in STAGES] == [
        'install-client',
        'create-config-files',
        'fetch-certificates',
        'register-client',
        'configure-vaults',
        'cleanup-user-key',
        'run-client',
    ]


def test_default_run_writes_files_and_registers() -> None:
    cfg = make_cfg(chef__secret_key='s3cret', chef__attributes_json='{"a": 1}')
    channel = FakeChannel()
    ctx = _ctx(cfg, channel)
    result = run_pipeline(STAGES, ctx)

    assert result.stages_run == [
        'install-client',
        'create-config-files',
        'register-client',
        'cleanup-user-key',
        'run-client',
    ]
    assert result.stages_skipped == ['fetch-certificates', 'configure-vaults']
    assert result.client_exit_code == 0
    assert result.cleanup_done

    assert 'C:/Windows/Temp/ChefClient.ps1' in channel.files
    assert channel.files['C:/chef/encrypted_data_bag_secret'] == b's3cret'
    assert b'node_name               "web01"' in channel.files['C:/chef/client.rb']
    first_boot = json.loads(channel.files['C:/chef/first-boot.json'])
    assert first_boot == {'a': 1, 'run_list': ['recipe[base]']}
    # The user key was uploaded and removed again.
    assert 'C:/chef/bootstrap.pem' in channel.deleted
    assert 'C:/chef/bootstrap.pem' not in channel.files
    assert channel.server.clients == {'web01'}
    assert channel.commands[-1] == (
        'chef-client -j "C:/chef/first-boot.json" -E "_default"'
    )


def test_banners_are_emitted_for_running_stages() -> None:
    sink = ListSink()
    ctx = _ctx(make_cfg(chef__skip_install=True), FakeChannel(), sink=sink)
    run_pipeline(STAGES, ctx)
    assert 'Installing Chef Client...' not in sink.lines
    assert 'Creating configuration files...' in sink.lines
    assert 'Starting initial Chef-Client run...' in sink.lines


def test_existing_client_without_recreate_is_fatal() -> None:
    server = ChefServer(nodes={'web01'}, clients={'web01'})
    channel = FakeChannel(server=server)
    ctx = _ctx(make_cfg(), channel)
    with pytest.raises(StageError, match='already exists') as exc_info:
        run_pipeline(STAGES, ctx)
    assert exc_info.value.stage == 'register-client'
    assert _knife(channel, 'node delete') == []
    assert _knife(channel, 'client create') == []
    assert 'register-client' not in ctx.result.stages_run


def test_recreate_deletes_existing_records_before_create() -> None:
    server = ChefServer(nodes={'web01'}, clients={'web01'})
    channel = FakeChannel(server=server)
    ctx = _ctx(make_cfg(chef__recreate_client=True), channel)
    register_client(ctx)
    verbs = [
        c.split()[1] + ' ' + c.split()[2]
        for c in channel.commands
        if c.startswith('knife')
    ]
    assert verbs == [
        'node show',
        'client show',
        'node delete',
        'client delete',
        'client create',
    ]
    assert server.nodes == set()
    assert server.clients == {'web01'}


def test_registration_is_repeatable_with_recreate() -> None:
    channel = FakeChannel()
    ctx = _ctx(make_cfg(chef__recreate_client=True), channel)
    register_client(ctx)
    first = list(channel.commands)
    channel.commands.clear()
    register_client(ctx)
    assert channel.server.clients == {'web01'}
    assert len(_knife(channel, 'client create')) == 1
    assert len(_knife(channel, 'client delete')) == 1
    assert len(first) == 3


def test_orphan_node_is_removed() -> None:
    channel = FakeChannel(server=ChefServer(nodes={'web01'}))
    register_client(_ctx(make_cfg(), channel))
    assert len(_knife(channel, 'node delete')) == 1
    assert _knife(channel, 'client delete') == []
    assert channel.server.clients == {'web01'}


def test_skip_register_skips_certificates_and_registration() -> None:
    cfg = make_cfg(chef__skip_register=True, chef__fetch_chef_certificates=True)
    channel = FakeChannel()
    result = run_pipeline(STAGES, _ctx(cfg, channel))
    assert 'register-client' in result.stages_skipped
    assert 'fetch-certificates' in result.stages_skipped
    assert not any('knife' in c for c in channel.commands)


def test_fetch_certificates_runs_before_registration() -> None:
    cfg = make_cfg(chef__fetch_chef_certificates=True)
    channel = FakeChannel()
    run_pipeline(STAGES, _ctx(cfg, channel))
    knife = [c for c in channel.commands if c.startswith('knife')]
    assert knife[0] == 'knife ssl fetch -c C:/chef/client.rb'


def test_vaults_with_recreate_remove_then_update() -> None:
    cfg = make_cfg(
        chef__vault_json='{"secrets": ["db", "api"]}',
        chef__recreate_client=True,
    )
    channel = FakeChannel()
    result = run_pipeline(STAGES, _ctx(cfg, channel))
    assert 'configure-vaults' in result.stages_run
    vault = [c for c in channel.commands if 'vault' in c]
    assert vault[0] == 'C:/opscode/chef/embedded/bin/gem install chef-vault'
    assert [c.split()[2] + ' ' + c.split()[4] for c in vault[1:]] == [
        'remove db',
        'remove api',
        'update db',
        'update api',
    ]


def test_linux_sudo_opens_and_closes_config_dir(tmp_path: Path) -> None:
    hint = tmp_path / 'vsphere.json'
    hint.write_text('{}')
    cfg = make_cfg(chef__ohai_hints=[str(hint)], chef__skip_install=True)
    channel = FakeChannel('linuxGuest')
    profile = select_profile('', 'linuxGuest', guest_user='ubuntu')
    run_pipeline(STAGES, _ctx(cfg, channel, profile))
    cmds = channel.commands
    assert cmds[0] == 'sudo mkdir -p /etc/chef'
    assert cmds[1] == 'sudo chmod 777 /etc/chef'
    assert '/etc/chef/ohai/hints/vsphere.json' in channel.files
    assert cmds.index('sudo chmod 755 /etc/chef') < cmds.index(
        'sudo chown -R root:root /etc/chef'
    )
    assert cmds[-2] == 'sudo rm -f /etc/chef/bootstrap.pem'
    assert cmds[-1] == 'sudo chef-client -j "/etc/chef/first-boot.json" -E "_default"'
    assert '/etc/chef/bootstrap.pem' not in channel.files


def test_failure_is_wrapped_with_stage_and_code() -> None:
    channel = FakeChannel(handler=lambda cmd: 5 if 'mkdir' in cmd else None)
    ctx = _ctx(make_cfg(chef__skip_install=True), channel)
    with pytest.raises(StageError) as exc_info:
        run_pipeline(STAGES, ctx)
    assert exc_info.value.stage == 'create-config-files'
    assert exc_info.value.code == 5
    assert ctx.result.stages_run == []
    assert not any('chef-client' in c for c in channel.commands)


def test_terminal_run_retries_until_success() -> None:
    codes = iter([1, 1, 0])

    def handler(cmd):
        if cmd.startswith('chef-client'):
            return next(codes)
        return None

    cfg = make_cfg(
        chef__skip_install=True,
        retry__max_retries=3,
        retry__retry_on_exit_code=[1],
        retry__wait_for_retry=12,
    )
    ctx = _ctx(cfg, FakeChannel(handler=handler))
    result = run_pipeline(STAGES, ctx)
    assert result.client_exit_code == 0
    assert ctx.sleep.calls == [12, 12]


def test_terminal_fatal_code_is_stage_error() -> None:
    channel = FakeChannel(
        handler=lambda cmd: (2, 'converge failed') if cmd.startswith('chef-client') else None
    )
    ctx = _ctx(make_cfg(chef__skip_install=True), channel)
    with pytest.raises(StageError) as exc_info:
        run_pipeline(STAGES, ctx)
    assert exc_info.value.stage == 'run-client'
    assert exc_info.value.code == 2
    assert ctx.cleanup.done


def test_log_to_file_redirects_client_output(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    channel = FakeChannel(
        handler=lambda cmd: (0, '\x1b[32mConverged\x1b[0m\n')
        if cmd.startswith('chef-client')
        else None
    )
    sink = ListSink()
    cfg = make_cfg(chef__skip_install=True, chef__log_to_file=True)
    run_pipeline(STAGES, _ctx(cfg, channel, sink=sink))
    logfile = tmp_path / 'logfiles' / 'web01'
    assert 'Converged' in logfile.read_text()
    assert not any('Converged' in line for line in sink.lines)


def test_cancellation_is_not_wrapped() -> None:
    ctx = _ctx(make_cfg(), FakeChannel())

    def cancel_now(c):
        c.cancel.cancel()

    stages = (
        PipelineStage('first', cancel_now),
        PipelineStage('second', lambda c: pytest.fail('must not run')),
    )
    with pytest.raises(ProvisionCancelled):
        run_pipeline(stages, ctx)
    assert ctx.result.stages_run == ['first']
