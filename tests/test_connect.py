from __future__ import annotations

import pytest

from _fakes import FakeChannel, FakeSession, Sleeps, fake_backend
from vcprov.config import ConnectConfig, GuestConfig, VSphereConfig
from vcprov.connect import connect_endpoint, open_guest, wait_for_guest
from vcprov.errors import ConfigError, ConnectivityError
from vcprov.output import ListSink
from vcprov.retry import CancelToken, RetryPolicy

VS = VSphereConfig(host='vc', user='u', password='p', vm_name='web01')


def test_endpoint_becomes_healthy_on_later_attempt() -> None:
    session = FakeSession(healthy_after=3)
    connector, _, _ = fake_backend(FakeChannel(), session)
    sleeps = Sleeps()
    sink = ListSink()
    got = connect_endpoint(
        connector, VS, RetryPolicy(15, 4), sink=sink, sleep=sleeps
    )
    assert got is session
    assert len(connector.calls) == 1
    assert session.checks == 3
    assert sleeps.calls == [15, 15]
    assert sink.lines[-1] == 'client connection to VC successful!'
    assert not session.closed


def test_endpoint_never_healthy_closes_session() -> None:
    session = FakeSession(healthy_after=99)
    connector, _, _ = fake_backend(FakeChannel(), session)
    sleeps = Sleeps()
    with pytest.raises(ConnectivityError, match='after 4 attempt'):
        connect_endpoint(
            connector, VS, RetryPolicy(15, 4), sink=ListSink(), sleep=sleeps
        )
    assert session.checks == 4
    assert sleeps.calls == [15, 15, 15]
    assert session.closed


def test_connect_failures_are_retried() -> None:
    session = FakeSession()
    failures = [OSError('refused'), OSError('refused')]

    def connector(host, user, password):
        if failures:
            raise failures.pop()
        return session

    got = connect_endpoint(
        connector, VS, RetryPolicy(1, 4), sink=ListSink(), sleep=Sleeps()
    )
    assert got is session


def test_guest_ready_after_credential_failures() -> None:
    channel = FakeChannel(credential_failures=2)
    sleeps = Sleeps()
    sink = ListSink()
    wait_for_guest(channel, RetryPolicy(10, 3), sink=sink, sleep=sleeps)
    assert channel.credential_checks == 3
    assert sleeps.calls == [10, 10]
    assert sink.lines[-1] == 'connection successful! guest agent healthy'


def test_guest_never_ready_is_fatal() -> None:
    channel = FakeChannel(credential_failures=10)
    with pytest.raises(ConnectivityError, match='guest agent'):
        wait_for_guest(channel, RetryPolicy(10, 3), sink=ListSink(), sleep=Sleeps())
    assert channel.credential_checks == 3


@pytest.mark.parametrize(
    'family, expected', [('windowsGuest', 'windows'), ('linuxGuest', 'linux')]
)
def test_open_guest_selects_profile_from_family(family, expected) -> None:
    channel = FakeChannel(family)
    connector, factory, session = fake_backend(channel)
    guest = GuestConfig(user='admin', password='x', timeout=30, interval=10)
    with open_guest(
        VS,
        guest,
        ConnectConfig(),
        sink=ListSink(),
        cancel=CancelToken(),
        connector=connector,
        channel_factory=factory,
        sleep=Sleeps(),
    ) as target:
        assert target.profile.name == expected
        assert target.channel is channel
        assert not session.closed
    assert session.closed


def test_open_guest_override_skips_probe() -> None:
    channel = FakeChannel('otherGuest')
    connector, factory, _ = fake_backend(channel)
    guest = GuestConfig(user='root', password='x', os_type='linux')
    with open_guest(
        VS,
        guest,
        ConnectConfig(),
        sink=ListSink(),
        cancel=CancelToken(),
        connector=connector,
        channel_factory=factory,
        sleep=Sleeps(),
    ) as target:
        assert target.profile.name == 'linux'
        assert target.profile.use_sudo is False


def test_open_guest_unknown_family_closes_session() -> None:
    channel = FakeChannel('otherGuest')
    connector, factory, session = fake_backend(channel)
    guest = GuestConfig(user='admin', password='x')
    with pytest.raises(ConfigError, match='otherGuest'):
        with open_guest(
            VS,
            guest,
            ConnectConfig(),
            sink=ListSink(),
            cancel=CancelToken(),
            connector=connector,
            channel_factory=factory,
            sleep=Sleeps(),
        ):
            pass
    assert session.closed
