"""vSphere management session and guest-operations channel.

File transfer uses the HTTPS URLs handed out by the guest operations
file manager. Processes are started through the process manager and
polled until they report an end time.
"""

from __future__ import annotations

import copy
import io
import ssl
from typing import BinaryIO, Iterator
from urllib.parse import urlsplit, urlunsplit

import requests
from loguru import logger
from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from .config import GuestConfig, VSphereConfig
from .errors import ConnectivityError, GuestChannelError, ProvisionCancelled
from .retry import CancelToken
from .util import CmdResult

log = logger

# (connect, read) seconds; the read timeout bounds each socket read.
TRANSFER_TIMEOUT_S = (10, 60)
TRANSFER_CHUNK_SIZE = 64 * 1024
PROCESS_POLL_S = 2.0


class _CancellableBody:
    """Request body sent in chunks, checking for cancellation between them.

    ``__len__`` lets requests send a Content-Length header instead of
    chunked transfer encoding.
    """

    def __init__(self, data: bytes, cancel: CancelToken, chunk_size: int):
        self.data = data
        self.cancel = cancel
        self.chunk_size = chunk_size

    def __len__(self) -> int:
        return len(self.data)

    def __iter__(self) -> Iterator[bytes]:
        view = memoryview(self.data)
        for start in range(0, len(view), self.chunk_size):
            self.cancel.check()
            yield bytes(view[start:start + self.chunk_size])


class VSphereSession:
    """Live service-instance connection to a vCenter endpoint."""

    def __init__(self, si, host: str, insecure: bool = True):
        self.si = si
        self.host = host
        self.insecure = insecure

    @property
    def content(self):
        return self.si.RetrieveContent()

    def is_healthy_cluster(self) -> bool:
        try:
            about = self.content.about
        except (vmodl.MethodFault, OSError) as ex:
            log.debug('Session to {} unusable: {}', self.host, ex)
            return False
        return getattr(about, 'apiType', '') == 'VirtualCenter'

    def find_datacenter(self, name: str = ''):
        for entity in self.content.rootFolder.childEntity:
            if isinstance(entity, vim.Datacenter) and (not name or entity.name == name):
                return entity
        raise ConnectivityError(f'datacenter {name or "(default)"!r} not found on {self.host}')

    def find_vm(self, name: str, datacenter: str = ''):
        dc = self.find_datacenter(datacenter)
        view = self.content.viewManager.CreateContainerView(
            dc.vmFolder, [vim.VirtualMachine], True
        )
        try:
            for vm in view.view:
                if vm.name == name:
                    return vm
        finally:
            view.Destroy()
        raise ConnectivityError(f'[vm] {name} does not exist in [vc] {self.host}')

    def close(self) -> None:
        Disconnect(self.si)


def connect(
    host: str, user: str, password: str, *, insecure: bool = True
) -> VSphereSession:
    context = ssl._create_unverified_context() if insecure else None
    try:
        si = SmartConnect(host=host, user=user, pwd=password, sslContext=context)
    except (vmodl.MethodFault, OSError) as ex:
        raise ConnectivityError(f'cannot connect to {host}: {ex}') from ex
    return VSphereSession(si, host, insecure=insecure)


class VSphereGuestChannel:
    """Guest agent primitives for one VM and one set of guest credentials."""

    def __init__(
        self,
        session: VSphereSession,
        vm,
        user: str,
        password: str,
        *,
        cancel: CancelToken | None = None,
    ):
        self.session = session
        self.vm = vm
        self.auth = vim.vm.guest.NamePasswordAuthentication(
            username=user, password=password
        )
        self.cancel = cancel or CancelToken()
        self._gom = session.content.guestOperationsManager

    def without_cancel(self) -> 'VSphereGuestChannel':
        """Return a view of this channel that ignores the run's cancel token.

        Used for cleanup that must still happen after a cancelled run.
        """
        clone = copy.copy(self)
        clone.cancel = CancelToken()
        return clone

    def _call(self, what: str, fn, *args, **kwargs):
        self.cancel.check()
        try:
            return fn(*args, **kwargs)
        except vmodl.MethodFault as ex:
            raise GuestChannelError(f'{what} failed: {ex.msg or ex}') from ex

    def _fix_url(self, url: str) -> str:
        parts = urlsplit(url)
        if parts.hostname in (None, '*'):
            netloc = self.session.host
            if parts.port:
                netloc = f'{netloc}:{parts.port}'
            parts = parts._replace(netloc=netloc)
        return urlunsplit(parts)

    def test_credentials(self) -> None:
        self._call(
            'credential test',
            self._gom.authManager.ValidateCredentialsInGuest,
            vm=self.vm,
            auth=self.auth,
        )

    def guest_os_family(self) -> str:
        return str(self.vm.guest.guestFamily or '')

    def upload_file(self, path: str, stream: BinaryIO) -> None:
        data = stream.read()
        url = self._call(
            f'upload of {path}',
            self._gom.fileManager.InitiateFileTransferToGuest,
            vm=self.vm,
            auth=self.auth,
            guestFilePath=path,
            fileAttributes=vim.vm.guest.FileManager.FileAttributes(),
            fileSize=len(data),
            overwrite=True,
        )
        body = (
            _CancellableBody(data, self.cancel, TRANSFER_CHUNK_SIZE) if data else data
        )
        try:
            resp = requests.put(
                self._fix_url(url),
                data=body,
                verify=not self.session.insecure,
                timeout=TRANSFER_TIMEOUT_S,
            )
            resp.raise_for_status()
        except requests.RequestException as ex:
            raise GuestChannelError(f'upload of {path} failed: {ex}') from ex

    def download_file(self, path: str) -> bytes:
        info = self._call(
            f'download of {path}',
            self._gom.fileManager.InitiateFileTransferFromGuest,
            vm=self.vm,
            auth=self.auth,
            guestFilePath=path,
        )
        buf = io.BytesIO()
        try:
            with requests.get(
                self._fix_url(info.url),
                verify=not self.session.insecure,
                timeout=TRANSFER_TIMEOUT_S,
                stream=True,
            ) as resp:
                resp.raise_for_status()
                for chunk in resp.iter_content(TRANSFER_CHUNK_SIZE):
                    self.cancel.check()
                    buf.write(chunk)
        except requests.RequestException as ex:
            raise GuestChannelError(f'download of {path} failed: {ex}') from ex
        return buf.getvalue()

    def delete_file(self, path: str) -> None:
        self._call(
            f'delete of {path}',
            self._gom.fileManager.DeleteFileInGuest,
            vm=self.vm,
            auth=self.auth,
            filePath=path,
        )

    def run_command(self, program: str, arguments: str) -> CmdResult:
        pm = self._gom.processManager
        spec = vim.vm.guest.ProcessManager.ProgramSpec(
            programPath=program, arguments=arguments
        )
        pid = self._call(
            f'start of {program}', pm.StartProgramInGuest,
            vm=self.vm, auth=self.auth, spec=spec,
        )
        log.debug('Started guest pid={} program={}', pid, program)
        while True:
            procs = self._call(
                f'status of pid {pid}', pm.ListProcessesInGuest,
                vm=self.vm, auth=self.auth, pids=[pid],
            )
            if not procs:
                raise GuestChannelError(f'guest process {pid} disappeared')
            info = procs[0]
            if info.endTime is not None:
                return CmdResult(int(info.exitCode or 0))
            try:
                self.cancel.sleep(PROCESS_POLL_S)
            except ProvisionCancelled:
                self._terminate(pid)
                raise

    def _terminate(self, pid: int) -> None:
        try:
            self._gom.processManager.TerminateProcessInGuest(
                vm=self.vm, auth=self.auth, pid=pid
            )
        except vmodl.MethodFault as ex:
            log.warning('Could not terminate guest pid={}: {}', pid, ex)


def open_guest_channel(
    session: VSphereSession,
    vsphere: VSphereConfig,
    guest: GuestConfig,
    cancel: CancelToken,
) -> VSphereGuestChannel:
    vm = session.find_vm(vsphere.vm_name, vsphere.datacenter)
    return VSphereGuestChannel(
        session, vm, guest.user, guest.password, cancel=cancel
    )
