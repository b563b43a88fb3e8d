# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/vmware/client.py
"""
vCenter/ESXi client for the recovery pipeline (pyvmomi).

Covers storage rescan, VMFS snapshot resignature, VMX discovery and VM
registration on a single target host, plus the inverse operations used by
compensation. Every wait is a bounded poll (`snap2vm.core.retry.poll_until`).
"""

from __future__ import annotations

import logging
import socket
import ssl
import time
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim

from ..core.auth import AuthProvider, Credential
from ..core.exceptions import AuthError, ConflictError, MountError, NotFoundError, RegistrationError, VMwareError
from ..core.retry import poll_until
from .datastore import device_matches_serial, join_ds_path
from .models import Datastore, HostInitiators, VmSummary

DeviceMatch = Callable[[str], bool]

_COPIED_CHOICE = "copied"  # label of the "I Copied It" answer to the disk-identity question


def _wwn_hex(value: Any) -> str:
    # portWorldWideName is a signed 64-bit long in the vSphere API
    return format(int(value) & 0xFFFFFFFFFFFFFFFF, "016x")


class VmxListing:
    """
    VMX files on one datastore. Iterating issues a fresh datastore-browser search,
    so the listing can be walked more than once.
    """

    def __init__(self, client: "VSphereClient", datastore: Datastore, *, pattern: str = "*.vmx"):
        self._client = client
        self._datastore = datastore
        self._pattern = pattern

    def __iter__(self) -> Iterator[str]:
        ds = self._datastore.ref
        browser = getattr(ds, "browser", None)
        if browser is None:
            raise VMwareError(msg=f"datastore {self._datastore.name} has no browser")

        spec = vim.host.DatastoreBrowser.SearchSpec()  # type: ignore[attr-defined]
        spec.matchPattern = [self._pattern]
        task = browser.SearchDatastoreSubFolders_Task(f"[{self._datastore.name}]", spec)
        results = self._client.wait_for_task(task) or []

        for folder in sorted(results, key=lambda r: str(getattr(r, "folderPath", ""))):
            folder_path = str(getattr(folder, "folderPath", "") or "")
            # VMFS system folders (.sdd.sf, .vSphere-HA, ...) never hold guests
            if "] ." in folder_path or "/." in folder_path:
                continue
            for fi in sorted(getattr(folder, "file", None) or [], key=lambda f: str(f.path)):
                yield join_ds_path(folder_path, str(fi.path))

    def __repr__(self) -> str:
        return f"VmxListing({self._datastore.name!r}, {self._pattern!r})"


class VSphereClient:
    """
    One vSphere session for the whole run. `connect()` is idempotent for the same
    endpoint and user.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        insecure: bool = False,
        timeout: Optional[float] = 60.0,
        naa_vendor_prefix: str = "624a9370",
        task_poll_attempts: int = 120,
        task_poll_delay_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.logger = logger
        self.insecure = insecure
        self.timeout = timeout
        self.naa_vendor_prefix = naa_vendor_prefix
        self.task_poll_attempts = task_poll_attempts
        self.task_poll_delay_s = task_poll_delay_s
        self._sleep = sleep

        self.si: Any = None
        self._session_key: Optional[Tuple[str, int, str]] = None

    # Connection

    def _ssl_context(self) -> ssl.SSLContext:
        if self.insecure:
            self.logger.warning("TLS certificate verification is DISABLED for vCenter (insecure=True).")
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            return ctx
        return ssl.create_default_context()

    def _session_alive(self) -> bool:
        try:
            return self.si.content.sessionManager.currentSession is not None
        except Exception as e:
            self.logger.debug("vSphere session check failed: %s", e)
            return False

    def connect(self, endpoint: str, auth: AuthProvider, *, port: int = 443) -> None:
        cred = auth.resolve()
        if not isinstance(cred, Credential):
            raise AuthError(f"vCenter requires a username/password credential, got {auth.kind}")

        key = (endpoint, int(port), cred.username)
        if self.si is not None and self._session_key == key and self._session_alive():
            self.logger.debug("Reusing vSphere session to %s as %s", endpoint, cred.username)
            return
        if self.si is not None:
            self.disconnect()

        ctx = self._ssl_context()
        old_timeout = socket.getdefaulttimeout()
        socket.setdefaulttimeout(self.timeout)
        try:
            self.si = SmartConnect(host=endpoint, user=cred.username, pwd=cred.password, port=port, sslContext=ctx)
        except vim.fault.InvalidLogin as e:  # type: ignore[attr-defined]
            self.si = None
            raise AuthError(f"vCenter login rejected for {cred.username}", cause=e)
        except Exception as e:
            self.si = None
            raise AuthError(f"vCenter {endpoint} unreachable: {e}", cause=e)
        finally:
            socket.setdefaulttimeout(old_timeout)

        self._session_key = key
        self.logger.info("Connected to vSphere: %s:%s", endpoint, port)

    def disconnect(self) -> None:
        try:
            if self.si is not None:
                Disconnect(self.si)
        except Exception as e:
            self.logger.error("Error during vSphere disconnect: %s", e)
        finally:
            self.si = None
            self._session_key = None

    def _content(self) -> Any:
        if not self.si:
            raise VMwareError(msg="Not connected to vSphere")
        return self.si.RetrieveContent()

    def _objects(self, vimtype: Any, root: Any = None) -> List[Any]:
        content = self._content()
        view = content.viewManager.CreateContainerView(root or content.rootFolder, [vimtype], True)
        try:
            return list(view.view)
        finally:
            view.Destroy()

    # Tasks

    def wait_for_task(self, task: Any, *, what: str = "task") -> Any:
        """Poll a vSphere task a bounded number of times; returns task.info.result."""

        def check(_attempt: int) -> Optional[str]:
            state = task.info.state
            if state in (vim.TaskInfo.State.success, vim.TaskInfo.State.error):  # type: ignore[attr-defined]
                return state
            return None

        state = poll_until(
            check,
            attempts=self.task_poll_attempts,
            delay_s=self.task_poll_delay_s,
            what=what,
            logger=self.logger,
            sleep=self._sleep,
        )
        if state is None:
            raise VMwareError(msg=f"{what} did not finish after {self.task_poll_attempts} polls")
        if state == vim.TaskInfo.State.error:  # type: ignore[attr-defined]
            err = task.info.error
            text = getattr(err, "msg", None) or str(err)
            raise VMwareError(msg=f"{what} failed: {text}", cause=err if isinstance(err, BaseException) else None)
        return task.info.result

    # Hosts

    def get_host(self, name: str) -> Any:
        """Connected HostSystem by exact name, or by short name when that is unambiguous."""
        hosts = self._objects(vim.HostSystem)
        wanted = name.strip().lower()
        found = [h for h in hosts if str(h.name).lower() == wanted]
        if not found:
            found = [h for h in hosts if str(h.name).lower().split(".")[0] == wanted]
            if len(found) > 1:
                raise NotFoundError(f"host name {name} is ambiguous", context={"matches": sorted(h.name for h in found)})
        if not found:
            raise NotFoundError(f"host {name} not found in vCenter")
        host = found[0]
        state = getattr(getattr(host, "runtime", None), "connectionState", None)
        if state != vim.HostSystem.ConnectionState.connected:  # type: ignore[attr-defined]
            raise NotFoundError(f"host {host.name} is not connected (state={state})")
        return host

    def host_initiators(self, host: Any) -> HostInitiators:
        wwns: List[str] = []
        iqns: List[str] = []
        for hba in host.config.storageDevice.hostBusAdapter or []:
            if isinstance(hba, vim.host.FibreChannelHba):  # type: ignore[attr-defined]
                wwns.append(_wwn_hex(hba.portWorldWideName))
            elif isinstance(hba, vim.host.InternetScsiHba):  # type: ignore[attr-defined]
                if hba.iScsiName:
                    iqns.append(str(hba.iScsiName))
        self.logger.debug("Host %s initiators: %d FC, %d iSCSI", host.name, len(wwns), len(iqns))
        return HostInitiators(host=str(host.name), wwns=tuple(wwns), iqns=tuple(iqns))

    def cluster_peers(self, host: Any) -> List[Any]:
        """Other connected hosts in the same compute resource as `host`."""
        parent = getattr(host, "parent", None)
        peers = []
        for h in getattr(parent, "host", None) or []:
            if h is host or h.name == host.name:
                continue
            if getattr(h.runtime, "connectionState", None) == vim.HostSystem.ConnectionState.connected:  # type: ignore[attr-defined]
                peers.append(h)
        return sorted(peers, key=lambda h: h.name)

    # Storage

    def rescan_storage(self, host: Any) -> bool:
        """HBA + VMFS rescan. Best-effort: failures are logged and reported as False."""
        ss = host.configManager.storageSystem
        ok = True
        for label, call in (("HBA", ss.RescanAllHba), ("VMFS", ss.RescanVmfs)):
            try:
                call()
            except Exception as e:
                ok = False
                self.logger.warning("%s rescan failed on %s: %s", label, host.name, e)
        return ok

    def resignature_unresolved_volumes(
        self,
        host: Any,
        match: DeviceMatch,
        *,
        member: Optional[DeviceMatch] = None,
    ) -> List[Any]:
        """
        Resignature unresolved (snapshot) VMFS volumes with an extent on `match`.

        Every other extent must satisfy `member` (default: `match`), so a VMFS
        spanning several clones of one run resignatures as a whole. Unresolved
        volumes touching any other device are left alone.
        """
        member = member or match
        ds_sys = host.configManager.datastoreSystem
        mounted: List[Any] = []
        for vol in ds_sys.QueryUnresolvedVmfsVolumes() or []:
            extents = list(getattr(vol, "extent", None) or [])
            disks = [str(e.device.diskName) for e in extents]
            if not extents or not any(match(d) for d in disks) or not all(match(d) or member(d) for d in disks):
                self.logger.debug("Ignoring unresolved VMFS %s on %s", getattr(vol, "vmfsLabel", "?"), disks)
                continue
            status = getattr(vol, "resolveStatus", None)
            if status is not None and not status.resolvable:
                self.logger.warning(
                    "Unresolved VMFS %s on %s is not resolvable (incomplete=%s, multiple copies=%s)",
                    vol.vmfsLabel,
                    disks,
                    getattr(status, "incompleteExtents", None),
                    getattr(status, "multipleCopies", None),
                )
                continue

            spec = vim.host.UnresolvedVmfsResignatureSpec()  # type: ignore[attr-defined]
            spec.extentDevicePath = [str(e.devicePath) for e in extents]
            self.logger.info("Resignaturing VMFS %s on %s", vol.vmfsLabel, ", ".join(disks))
            result = self.wait_for_task(
                ds_sys.ResignatureUnresolvedVmfsVolume_Task(resolutionSpec=spec),
                what=f"resignature {vol.vmfsLabel}",
            )
            ds = getattr(result, "result", None)
            if ds is not None:
                mounted.append(ds)
        return mounted

    def _backing_disk(self, ds: Any, match: DeviceMatch) -> Optional[str]:
        vmfs = getattr(getattr(ds, "info", None), "vmfs", None)
        for ext in getattr(vmfs, "extent", None) or []:
            disk = str(getattr(ext, "diskName", "") or "")
            if match(disk):
                return disk
        return None

    def _find_mounted(self, host: Any, match: DeviceMatch) -> Optional[Any]:
        for ds in host.datastore or []:
            if self._backing_disk(ds, match):
                return ds
        return None

    def _datastore_model(self, ds: Any, match: Optional[DeviceMatch] = None) -> Datastore:
        summary = ds.summary
        vmfs = getattr(getattr(ds, "info", None), "vmfs", None)
        return Datastore(
            name=str(summary.name),
            capacity=int(summary.capacity or 0),
            free_space=int(summary.freeSpace or 0),
            device=self._backing_disk(ds, match) if match else None,
            vmfs_uuid=getattr(vmfs, "uuid", None),
            ref=ds,
        )

    def mount_datastore(
        self,
        host: Any,
        serial: str,
        *,
        attempts: int = 5,
        delay_s: float = 10.0,
        rescan: bool = True,
        companions: Sequence[str] = (),
    ) -> Datastore:
        """
        Make the VMFS on the cloned volume `serial` visible on `host`.

        `companions` are the serials of the other clones of the same run; a VMFS
        whose extents span them is accepted.

        Each attempt: already mounted? else rescan, resignature matching unresolved
        volumes, look again. MountError after `attempts` tries.
        """

        def match(disk: str) -> bool:
            return device_matches_serial(disk, serial, self.naa_vendor_prefix)

        def member(disk: str) -> bool:
            return any(device_matches_serial(disk, s, self.naa_vendor_prefix) for s in companions)

        def check(attempt: int) -> Optional[Any]:
            found = self._find_mounted(host, match)
            if found is not None:
                return found
            if rescan:
                self.rescan_storage(host)
            resignatured = self.resignature_unresolved_volumes(host, match, member=member)
            if resignatured:
                return resignatured[0]
            return self._find_mounted(host, match)

        ds = poll_until(
            check,
            attempts=attempts,
            delay_s=delay_s,
            what=f"datastore on serial {serial}",
            logger=self.logger,
            sleep=self._sleep,
        )
        if ds is None:
            raise MountError(
                f"no datastore for serial {serial} appeared on {host.name} after {attempts} attempts",
                context={"serial": serial, "host": host.name},
            )
        return self._datastore_model(ds, match)

    def rename_datastore(self, datastore: Datastore, new_name: str) -> Datastore:
        datastore.ref.RenameDatastore(newName=new_name)
        self.logger.info("Renamed datastore %s -> %s", datastore.name, new_name)
        return Datastore(
            name=new_name,
            capacity=datastore.capacity,
            free_space=datastore.free_space,
            device=datastore.device,
            vmfs_uuid=datastore.vmfs_uuid,
            ref=datastore.ref,
        )

    def unmount_datastore(self, host: Any, datastore: Datastore) -> None:
        """Unmount the VMFS, then detach its LUN (detach is best-effort)."""
        ss = host.configManager.storageSystem
        if not datastore.vmfs_uuid:
            raise VMwareError(msg=f"datastore {datastore.name} has no VMFS uuid")
        try:
            ss.UnmountVmfsVolume(vmfsUuid=datastore.vmfs_uuid)
        except Exception as e:
            raise VMwareError(msg=f"unmount {datastore.name} failed: {e}", cause=e)
        if not datastore.device:
            return
        for lun in getattr(host.config.storageDevice, "scsiLun", None) or []:
            if getattr(lun, "canonicalName", None) == datastore.device:
                try:
                    ss.DetachScsiLun(lunUuid=lun.uuid)
                except Exception as e:
                    self.logger.warning("Detach of %s failed (ignored): %s", datastore.device, e)
                break

    def find_vmx_files(self, datastore: Datastore) -> VmxListing:
        return VmxListing(self, datastore)

    # VMs

    def find_vm(self, name: str) -> Optional[Any]:
        for vm in self._objects(vim.VirtualMachine):
            if vm.name == name:
                return vm
        return None

    def _datacenter_of(self, obj: Any) -> Any:
        cur = obj
        for _ in range(32):
            cur = getattr(cur, "parent", None)
            if cur is None:
                break
            if isinstance(cur, vim.Datacenter):
                return cur
        raise NotFoundError(f"no datacenter above {getattr(obj, 'name', obj)}")

    def _resolve_folder(self, host: Any, folder: Optional[str]) -> Any:
        root = self._datacenter_of(host).vmFolder
        if not folder:
            return root
        for f in self._objects(vim.Folder, root):
            if f.name == folder:
                return f
        raise NotFoundError(f"VM folder {folder} not found")

    def _resolve_pool(self, host: Any, resource_pool: Optional[str]) -> Any:
        compute = host.parent
        if not resource_pool:
            return compute.resourcePool
        for p in self._objects(vim.ResourcePool, compute):
            if p.name == resource_pool:
                return p
        raise NotFoundError(f"resource pool {resource_pool} not found under {compute.name}")

    def register_vm(
        self,
        vmx_path: str,
        host: Any,
        name: str,
        *,
        folder: Optional[str] = None,
        resource_pool: Optional[str] = None,
    ) -> Any:
        if self.find_vm(name) is not None:
            raise ConflictError(f"VM {name} already exists", context={"vmx": vmx_path})
        target_folder = self._resolve_folder(host, folder)
        pool = self._resolve_pool(host, resource_pool)
        try:
            task = target_folder.RegisterVM_Task(path=vmx_path, name=name, asTemplate=False, pool=pool, host=host)
            vm = self.wait_for_task(task, what=f"register {name}")
        except VMwareError as e:
            if isinstance(e.cause, (vim.fault.DuplicateName, vim.fault.AlreadyExists)):  # type: ignore[attr-defined]
                raise ConflictError(f"VM {name} already exists", cause=e.cause)
            raise RegistrationError(f"register {vmx_path} as {name} rejected: {e.msg}", cause=e)
        except vim.fault.DuplicateName as e:  # type: ignore[attr-defined]
            raise ConflictError(f"VM {name} already exists", cause=e)
        except vim.fault.VimFault as e:  # type: ignore[attr-defined]
            raise RegistrationError(f"register {vmx_path} as {name} rejected: {getattr(e, 'msg', e)}", cause=e)
        self.logger.info("Registered %s from %s", name, vmx_path)
        return vm

    def answer_copied_prompt(self, vm: Any) -> bool:
        """
        Answer the "moved or copied?" question with "I Copied It" (new UUID).

        With no question pending, pre-seed `uuid.action=create` so the first
        power-on does not block on it.
        """
        question = getattr(vm.runtime, "question", None)
        if question is not None:
            for choice in question.choice.choiceInfo or []:
                text = str(getattr(choice, "label", "") or getattr(choice, "summary", "")).lower()
                if _COPIED_CHOICE in text:
                    vm.AnswerVM(questionId=question.id, answerChoice=str(choice.key))
                    self.logger.info("Answered copied-VM question for %s", vm.name)
                    return True
            self.logger.warning("Pending question on %s has no 'copied' choice: %s", vm.name, question.text)
            return False

        spec = vim.vm.ConfigSpec()  # type: ignore[attr-defined]
        spec.extraConfig = [vim.option.OptionValue(key="uuid.action", value="create")]  # type: ignore[attr-defined]
        self.wait_for_task(vm.ReconfigVM_Task(spec=spec), what=f"uuid.action on {vm.name}")
        return True

    def _find_network(self, port_group: str) -> Any:
        for net in self._objects(vim.Network):
            if net.name == port_group:
                return net
        raise NotFoundError(f"port group {port_group} not found")

    def reconfigure_network(self, vm: Any, port_group: str) -> bool:
        """Attach every NIC of `vm` to `port_group` (standard or distributed)."""
        network = self._find_network(port_group)
        changes = []
        for dev in vm.config.hardware.device or []:
            if not isinstance(dev, vim.vm.device.VirtualEthernetCard):  # type: ignore[attr-defined]
                continue
            if isinstance(network, vim.dvs.DistributedVirtualPortgroup):  # type: ignore[attr-defined]
                conn = vim.dvs.PortConnection()  # type: ignore[attr-defined]
                conn.portgroupKey = network.key
                conn.switchUuid = network.config.distributedVirtualSwitch.uuid
                backing = vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo()  # type: ignore[attr-defined]
                backing.port = conn
            else:
                backing = vim.vm.device.VirtualEthernetCard.NetworkBackingInfo()  # type: ignore[attr-defined]
                backing.deviceName = port_group
                backing.network = network
            dev.backing = backing
            change = vim.vm.device.VirtualDeviceSpec()  # type: ignore[attr-defined]
            change.operation = vim.vm.device.VirtualDeviceSpec.Operation.edit  # type: ignore[attr-defined]
            change.device = dev
            changes.append(change)
        if not changes:
            self.logger.warning("%s has no network adapters to attach to %s", vm.name, port_group)
            return False
        spec = vim.vm.ConfigSpec()  # type: ignore[attr-defined]
        spec.deviceChange = changes
        self.wait_for_task(vm.ReconfigVM_Task(spec=spec), what=f"network on {vm.name}")
        return True

    def power_on(self, vm: Any, *, answer_prompt: bool = False) -> None:
        """Power on; when `answer_prompt` a disk-identity question raised mid-boot is answered."""
        task = vm.PowerOnVM_Task()

        def check(_attempt: int) -> Optional[str]:
            state = task.info.state
            if state in (vim.TaskInfo.State.success, vim.TaskInfo.State.error):  # type: ignore[attr-defined]
                return state
            if answer_prompt and getattr(vm.runtime, "question", None) is not None:
                self.answer_copied_prompt(vm)
            return None

        state = poll_until(
            check,
            attempts=self.task_poll_attempts,
            delay_s=self.task_poll_delay_s,
            what=f"power on {vm.name}",
            logger=self.logger,
            sleep=self._sleep,
        )
        if state != vim.TaskInfo.State.success:  # type: ignore[attr-defined]
            err = task.info.error if state is not None else "timed out"
            raise VMwareError(msg=f"power on {vm.name} failed: {getattr(err, 'msg', None) or err}")

    def power_off(self, vm: Any) -> None:
        if vm.runtime.powerState != vim.VirtualMachinePowerState.poweredOn:  # type: ignore[attr-defined]
            return
        self.wait_for_task(vm.PowerOffVM_Task(), what=f"power off {vm.name}")

    def unregister_vm(self, vm: Any) -> None:
        """Remove from inventory only; disk files stay on the datastore."""
        vm.UnregisterVM()

    def vm_summary(self, vm: Any) -> VmSummary:
        cfg = getattr(vm, "config", None)
        hw = getattr(cfg, "hardware", None)
        devices = list(getattr(hw, "device", None) or [])
        disks = [d for d in devices if isinstance(d, vim.vm.device.VirtualDisk)]  # type: ignore[attr-defined]
        networks = tuple(sorted(str(n.name) for n in (getattr(vm, "network", None) or [])))
        return VmSummary(
            vcpu=getattr(hw, "numCPU", None),
            memory_mb=getattr(hw, "memoryMB", None),
            disk_count=len(disks),
            networks=networks,
            power_state=str(getattr(vm.runtime, "powerState", "unknown")),
        )

