"""Readiness of the management endpoint and of the guest agent."""

from __future__ import annotations

import contextlib
import functools
from dataclasses import dataclass
from typing import Callable, Iterator, Protocol

from loguru import logger

from .config import ConnectConfig, GuestConfig, VSphereConfig
from .output import OutputSink
from .platforms import OSProfile, select_profile
from .retry import CancelToken, RetryPolicy, wait_until
from .transfer import GuestChannel, GuestTransfer

log = logger


class ManagementSession(Protocol):
    def is_healthy_cluster(self) -> bool: ...

    def close(self) -> None: ...


Connector = Callable[[str, str, str], ManagementSession]
ChannelFactory = Callable[
    [ManagementSession, VSphereConfig, GuestConfig, CancelToken], GuestChannel
]


def connect_endpoint(
    connector: Connector,
    vsphere: VSphereConfig,
    policy: RetryPolicy,
    *,
    sink: OutputSink,
    cancel: CancelToken | None = None,
    sleep: Callable[[float], None] | None = None,
) -> ManagementSession:
    """Connect and confirm the endpoint is a healthy management cluster.

    A failed connect and an unhealthy session both count as one failed
    attempt. Sessions that never became healthy are closed.
    """
    holder: list[ManagementSession] = []

    def probe() -> ManagementSession | None:
        if not holder:
            holder.append(connector(vsphere.host, vsphere.user, vsphere.password))
        session = holder[0]
        if session.is_healthy_cluster():
            return session
        return None

    try:
        return wait_until(
            probe,
            policy,
            what=f'management endpoint {vsphere.host}',
            sink=sink,
            attempt_msg='testing client connectivity to VC...',
            ready_msg='client connection to VC successful!',
            cancel=cancel,
            sleep=sleep,
        )
    except BaseException:
        for session in holder:
            _close_quietly(session)
        raise


def wait_for_guest(
    channel: GuestChannel,
    policy: RetryPolicy,
    *,
    sink: OutputSink,
    cancel: CancelToken | None = None,
    sleep: Callable[[float], None] | None = None,
) -> None:
    """Poll the guest agent's credential test until it succeeds."""

    def probe() -> bool:
        channel.test_credentials()
        return True

    wait_until(
        probe,
        policy,
        what='guest agent',
        sink=sink,
        attempt_msg='connecting to guest....',
        ready_msg='connection successful! guest agent healthy',
        cancel=cancel,
        sleep=sleep,
    )


def _close_quietly(session: ManagementSession) -> None:
    try:
        session.close()
    except Exception as ex:
        log.debug('Ignoring error closing management session: {}', ex)


def default_backend(vsphere: VSphereConfig) -> tuple[Connector, ChannelFactory]:
    from . import vsphere as backend

    return (
        functools.partial(backend.connect, insecure=vsphere.insecure),
        backend.open_guest_channel,
    )


@dataclass
class GuestTarget:
    session: ManagementSession
    channel: GuestChannel
    profile: OSProfile
    transfer: GuestTransfer


@contextlib.contextmanager
def open_guest(
    vsphere: VSphereConfig,
    guest: GuestConfig,
    connect: ConnectConfig,
    *,
    sink: OutputSink,
    cancel: CancelToken,
    connector: Connector | None = None,
    channel_factory: ChannelFactory | None = None,
    sleep: Callable[[float], None] | None = None,
    prevent_sudo: bool = False,
) -> Iterator[GuestTarget]:
    """Connect, wait for the guest agent and select the OS profile.

    The management session is closed when the block exits.
    """
    if connector is None or channel_factory is None:
        default_connector, default_factory = default_backend(vsphere)
        connector = connector or default_connector
        channel_factory = channel_factory or default_factory
    session = connect_endpoint(
        connector,
        vsphere,
        RetryPolicy(interval=connect.interval, max_attempts=connect.attempts),
        sink=sink,
        cancel=cancel,
        sleep=sleep,
    )
    try:
        channel = channel_factory(session, vsphere, guest, cancel)
        wait_for_guest(
            channel,
            RetryPolicy.from_timeout(guest.timeout, guest.interval),
            sink=sink,
            cancel=cancel,
            sleep=sleep,
        )
        family = None if guest.os_type else channel.guest_os_family()
        profile = select_profile(
            guest.os_type,
            family,
            guest_user=guest.user,
            prevent_sudo=prevent_sudo,
        )
        log.debug('Selected {} profile (guest family={})', profile.name, family)
        yield GuestTarget(
            session=session,
            channel=channel,
            profile=profile,
            transfer=GuestTransfer(channel, profile, sink),
        )
    finally:
        _close_quietly(session)
