from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest

from _fakes import FakeChannel, Sleeps, fake_backend, make_raw
from vcprov.errors import ConfigError
from vcprov.filecopy import copy_file, decode_file_config
from vcprov.output import ListSink
from vcprov.util import GuestCommandError


def _cfg(**file_section):
    raw = make_raw()
    raw['file'] = file_section
    return decode_file_config(raw, env={})


def _copy(cfg, channel):
    connector, factory, session = fake_backend(channel)
    sink = ListSink()
    result = copy_file(
        cfg, connector=connector, channel_factory=factory, sink=sink, sleep=Sleeps()
    )
    return result, sink, session


def test_source_and_content_conflict() -> None:
    with pytest.raises(ConfigError, match="'source' conflicts with 'content'"):
        _cfg(source='a', content='b', destination='/x')


def test_source_or_content_required() -> None:
    with pytest.raises(ConfigError) as exc_info:
        _cfg()
    assert "must provide one of 'source' or 'content'" in exc_info.value.problems
    assert 'file.destination: required field is not set' in exc_info.value.problems


def test_inline_content_upload() -> None:
    channel = FakeChannel()
    result, sink, session = _copy(
        _cfg(content='hello', destination='C:/app/hello.txt'), channel
    )
    assert channel.files == {'C:/app/hello.txt': b'hello'}
    assert result.as_dict() == {
        'destination': 'C:/app/hello.txt',
        'archived': False,
        'extracted_to': '',
    }
    assert sink.lines[-2:] == ['Starting to upload file!', 'File uploaded!']
    assert session.closed


def test_empty_content_is_allowed() -> None:
    channel = FakeChannel()
    _copy(_cfg(content='', destination='/tmp/empty'), channel)
    assert channel.files == {'/tmp/empty': b''}


def test_single_file_upload(tmp_path: Path) -> None:
    src = tmp_path / 'app.conf'
    src.write_text('port = 80\n')
    channel = FakeChannel('linuxGuest')
    result, _, _ = _copy(_cfg(source=str(src), destination='/etc/app.conf'), channel)
    assert channel.files['/etc/app.conf'] == b'port = 80\n'
    assert not result.archived


def test_directory_is_archived_and_extracted(tmp_path: Path) -> None:
    src = tmp_path / 'bundle'
    src.mkdir()
    (src / 'a.txt').write_text('a')
    (src / 'b.txt').write_text('bb')
    channel = FakeChannel('linuxGuest')
    result, _, _ = _copy(_cfg(source=str(src), destination='/opt/bundle/'), channel)
    assert result.archived
    assert result.destination == '/opt/bundle.tar'
    assert result.extracted_to == '/opt/bundle/'
    with tarfile.open(fileobj=io.BytesIO(channel.files['/opt/bundle.tar'])) as tar:
        assert tar.getnames() == ['a.txt', 'b.txt']
    assert channel.commands == [
        'mkdir -p /opt/bundle/ && tar -xf /opt/bundle.tar -C /opt/bundle/ '
        '&& rm -f /opt/bundle.tar'
    ]


def test_failed_extraction_is_fatal(tmp_path: Path) -> None:
    src = tmp_path / 'bundle'
    src.mkdir()
    channel = FakeChannel('linuxGuest', handler=lambda cmd: 2)
    with pytest.raises(GuestCommandError):
        _copy(_cfg(source=str(src), destination='/opt/bundle'), channel)


def test_missing_source_fails_before_connecting(tmp_path: Path) -> None:
    cfg = _cfg(source=str(tmp_path / 'nope'), destination='/x')
    connector, factory, _ = fake_backend(FakeChannel())
    with pytest.raises(ConfigError, match='does not exist'):
        copy_file(cfg, connector=connector, channel_factory=factory, sink=ListSink())
    assert connector.calls == []
