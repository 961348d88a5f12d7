"""Top-level provisioning flow: connect, wait for guest, run stages."""

from __future__ import annotations

from typing import Callable

from loguru import logger

from .cleanup import CleanupGuard
from .config import ProvisionConfig
from .connect import ChannelFactory, Connector, open_guest
from .output import LogSink, OutputSink
from .pipeline import STAGES, PipelineStage, StageContext, run_pipeline
from .platforms import OSProfile
from .results import ProvisionResult
from .retry import CancelToken
from .transfer import GuestChannel, GuestTransfer

log = logger


def user_key_remover(
    channel: GuestChannel,
    profile: OSProfile,
    user_name: str,
    sink: OutputSink,
) -> Callable[[], None]:
    """Build the action that deletes the uploaded user key from the guest.

    The action ignores cancellation. Under sudo the config directory is
    root-owned, so the key is removed with a privileged shell command
    instead of the guest file manager.
    """

    def remove() -> None:
        detached = channel.without_cancel()
        if profile.use_sudo:
            GuestTransfer(detached, profile, sink).run_checked(
                profile.cleanup_key_cmd(user_name)
            )
        else:
            detached.delete_file(profile.path(f'{user_name}.pem'))

    return remove


def provision(
    cfg: ProvisionConfig,
    *,
    connector: Connector | None = None,
    channel_factory: ChannelFactory | None = None,
    sink: OutputSink | None = None,
    cancel: CancelToken | None = None,
    sleep: Callable[[float], None] | None = None,
    stages: tuple[PipelineStage, ...] = STAGES,
) -> ProvisionResult:
    """Provision the configured guest end to end.

    Raises a :class:`~vcprov.errors.ProvisionError` subclass on the first
    fatal failure, or :class:`~vcprov.errors.ProvisionCancelled` if
    ``cancel`` fires. Once the guest is reachable the user key is removed
    from it on every path.
    """
    sink = sink or LogSink()
    cancel = cancel or CancelToken()
    log.debug(
        'Provisioning vm={} node={}', cfg.vsphere.vm_name, cfg.chef.node_name
    )
    with open_guest(
        cfg.vsphere,
        cfg.guest,
        cfg.connect,
        sink=sink,
        cancel=cancel,
        connector=connector,
        channel_factory=channel_factory,
        sleep=sleep,
        prevent_sudo=cfg.chef.prevent_sudo,
    ) as target:
        guard = CleanupGuard(
            user_key_remover(
                target.channel, target.profile, cfg.chef.user_name, sink
            ),
            sink,
        )
        ctx = StageContext(
            cfg=cfg,
            transfer=target.transfer,
            cleanup=guard,
            sink=sink,
            cancel=cancel,
            result=ProvisionResult(os_type=target.profile.name),
            sleep=sleep,
        )
        try:
            result = run_pipeline(stages, ctx)
        finally:
            guard()
    result.cleanup_done = guard.done
    return result
