# SPDX-License-Identifier: LGPL-3.0-or-later
import unittest
from unittest.mock import Mock, patch

from pyVmomi import vim

from snap2vm.core.auth import ApiToken, Credential
from snap2vm.core.exceptions import AuthError, ConflictError, MountError, NotFoundError, VMwareError
from snap2vm.vmware.client import VSphereClient
from snap2vm.vmware.models import Datastore

SERIAL = "a1b2c3d4e5f6a7b8c9d0e1f2"
NAA = f"naa.624a9370{SERIAL}"


def _client(**kw):
    kw.setdefault("task_poll_attempts", 3)
    kw.setdefault("task_poll_delay_s", 0)
    return VSphereClient(Mock(), sleep=lambda s: None, **kw)


def _task(state="success", result=None, error=None):
    t = Mock()
    t.info.state = state
    t.info.result = result
    t.info.error = error
    return t


def _vmfs_ds(name, disk, uuid="uuid-1"):
    ds = Mock()
    ds.summary.name = name
    ds.summary.capacity = 50 * 1024 ** 3
    ds.summary.freeSpace = 10 * 1024 ** 3
    ds.info.vmfs.uuid = uuid
    ds.info.vmfs.extent = [Mock(diskName=disk)]
    return ds


def _unresolved(disk, label="sql-ds"):
    vol = Mock()
    vol.vmfsLabel = label
    ext = Mock(devicePath=f"/vmfs/devices/disks/{disk}:1")
    ext.device.diskName = disk
    vol.extent = [ext]
    vol.resolveStatus.resolvable = True
    return vol


class TestConnect(unittest.TestCase):
    @patch("snap2vm.vmware.client.SmartConnect")
    def test_connect_is_idempotent(self, smart):
        smart.return_value = Mock()
        c = _client()
        cred = Credential("administrator@vsphere.local", "pw")

        c.connect("vc01", cred)
        c.connect("vc01", cred)

        smart.assert_called_once()
        self.assertEqual(smart.call_args[1]["user"], "administrator@vsphere.local")

    @patch("snap2vm.vmware.client.Disconnect")
    @patch("snap2vm.vmware.client.SmartConnect")
    def test_reconnects_for_other_user(self, smart, disconnect):
        smart.return_value = Mock()
        c = _client()

        c.connect("vc01", Credential("a", "pw"))
        c.connect("vc01", Credential("b", "pw"))

        self.assertEqual(smart.call_count, 2)
        disconnect.assert_called_once()

    @patch("snap2vm.vmware.client.SmartConnect")
    def test_invalid_login(self, smart):
        smart.side_effect = vim.fault.InvalidLogin()

        with self.assertRaises(AuthError):
            _client().connect("vc01", Credential("a", "bad"))

    @patch("snap2vm.vmware.client.SmartConnect")
    def test_unreachable(self, smart):
        smart.side_effect = OSError("connection refused")

        with self.assertRaises(AuthError):
            _client().connect("vc01", Credential("a", "pw"))

    def test_token_rejected(self):
        with self.assertRaises(AuthError):
            _client().connect("vc01", ApiToken("T"))


class TestWaitForTask(unittest.TestCase):
    def test_success_returns_result(self):
        self.assertEqual(_client().wait_for_task(_task(result="vm-42")), "vm-42")

    def test_error_raises(self):
        with self.assertRaises(VMwareError):
            _client().wait_for_task(_task("error", error=Mock(msg="disk locked")))

    def test_bounded(self):
        task = _task("running")
        with self.assertRaises(VMwareError) as cm:
            _client(task_poll_attempts=4).wait_for_task(task, what="register")
        self.assertIn("4 polls", str(cm.exception))


class TestHosts(unittest.TestCase):
    def _host(self, name, state="connected"):
        h = Mock()
        h.name = name
        h.runtime.connectionState = state
        return h

    def test_get_host_by_short_name(self):
        c = _client()
        hosts = [self._host("esxi01.example.com"), self._host("esxi02.example.com")]
        with patch.object(c, "_objects", return_value=hosts):
            self.assertIs(c.get_host("esxi01"), hosts[0])

    def test_get_host_missing(self):
        c = _client()
        with patch.object(c, "_objects", return_value=[self._host("esxi02")]):
            with self.assertRaises(NotFoundError):
                c.get_host("esxi01")

    def test_get_host_disconnected(self):
        c = _client()
        with patch.object(c, "_objects", return_value=[self._host("esxi01", "disconnected")]):
            with self.assertRaises(NotFoundError):
                c.get_host("esxi01")

    def test_host_initiators(self):
        host = Mock()
        host.name = "esxi01"
        negative = int("a100000000000001", 16) - (1 << 64)
        host.config.storageDevice.hostBusAdapter = [
            vim.host.FibreChannelHba(device="vmhba2", portWorldWideName=0x21000024FF4CC3D0),
            vim.host.FibreChannelHba(device="vmhba3", portWorldWideName=negative),
            vim.host.InternetScsiHba(device="vmhba64", iScsiName="iqn.1998-01.com.vmware:esxi01"),
            vim.host.BlockHba(device="vmhba0"),
        ]

        ini = _client().host_initiators(host)

        self.assertEqual(ini.wwns, ("21000024ff4cc3d0", "a100000000000001"))
        self.assertEqual(ini.iqns, ("iqn.1998-01.com.vmware:esxi01",))


class TestStorage(unittest.TestCase):
    def _host(self):
        host = Mock()
        host.name = "esxi01"
        host.datastore = []
        return host

    def test_rescan_best_effort(self):
        host = self._host()
        host.configManager.storageSystem.RescanAllHba.side_effect = RuntimeError("busy")

        self.assertFalse(_client().rescan_storage(host))
        host.configManager.storageSystem.RescanVmfs.assert_called_once()

    def test_resignature_only_matching_device(self):
        host = self._host()
        ds_sys = host.configManager.datastoreSystem
        ours = _unresolved(NAA)
        other = _unresolved(NAA + "00", label="someone-else")
        ds_sys.QueryUnresolvedVmfsVolumes.return_value = [other, ours]
        new_ds = _vmfs_ds("snap-1234-sql-ds", NAA)
        ds_sys.ResignatureUnresolvedVmfsVolume_Task.return_value = _task(result=Mock(result=new_ds))

        c = _client()
        mounted = c.resignature_unresolved_volumes(host, lambda d: d == NAA)

        self.assertEqual(mounted, [new_ds])
        ds_sys.ResignatureUnresolvedVmfsVolume_Task.assert_called_once()
        spec = ds_sys.ResignatureUnresolvedVmfsVolume_Task.call_args[1]["resolutionSpec"]
        self.assertEqual(list(spec.extentDevicePath), [f"/vmfs/devices/disks/{NAA}:1"])

    def test_unresolvable_volume_skipped(self):
        host = self._host()
        vol = _unresolved(NAA)
        vol.resolveStatus.resolvable = False
        host.configManager.datastoreSystem.QueryUnresolvedVmfsVolumes.return_value = [vol]

        self.assertEqual(_client().resignature_unresolved_volumes(host, lambda d: True), [])

    def test_mount_finds_already_mounted(self):
        host = self._host()
        host.datastore = [_vmfs_ds("other", "naa.624a9370ffff"), _vmfs_ds("snap-ds", NAA, uuid="u-9")]

        ds = _client().mount_datastore(host, SERIAL, attempts=1, delay_s=0)

        self.assertEqual(ds.name, "snap-ds")
        self.assertEqual(ds.device, NAA)
        self.assertEqual(ds.vmfs_uuid, "u-9")
        host.configManager.storageSystem.RescanAllHba.assert_not_called()

    def test_mount_resignatures_after_rescan(self):
        host = self._host()
        ds_sys = host.configManager.datastoreSystem
        ds_sys.QueryUnresolvedVmfsVolumes.return_value = [_unresolved(NAA)]
        ds_sys.ResignatureUnresolvedVmfsVolume_Task.return_value = _task(result=Mock(result=_vmfs_ds("snap-ds", NAA)))

        ds = _client().mount_datastore(host, SERIAL, attempts=3, delay_s=0)

        self.assertEqual(ds.name, "snap-ds")
        host.configManager.storageSystem.RescanAllHba.assert_called_once()

    def _spanned(self, *disks):
        vol = _unresolved(disks[0], label="span-ds")
        extents = []
        for d in disks:
            ext = Mock(devicePath=f"/vmfs/devices/disks/{d}:1")
            ext.device.diskName = d
            extents.append(ext)
        vol.extent = extents
        return vol

    def test_spanned_vmfs_resignatured_with_companions(self):
        other_serial = "0" * 23 + "1"
        host = self._host()
        ds_sys = host.configManager.datastoreSystem
        ds_sys.QueryUnresolvedVmfsVolumes.return_value = [self._spanned(NAA, f"naa.624a9370{other_serial}")]
        ds_sys.ResignatureUnresolvedVmfsVolume_Task.return_value = _task(result=Mock(result=_vmfs_ds("snap-span", NAA)))

        ds = _client().mount_datastore(host, SERIAL, attempts=1, delay_s=0, companions=[other_serial])

        self.assertEqual(ds.name, "snap-span")
        spec = ds_sys.ResignatureUnresolvedVmfsVolume_Task.call_args[1]["resolutionSpec"]
        self.assertEqual(len(spec.extentDevicePath), 2)

    def test_spanned_vmfs_with_foreign_extent_left_alone(self):
        host = self._host()
        ds_sys = host.configManager.datastoreSystem
        ds_sys.QueryUnresolvedVmfsVolumes.return_value = [self._spanned(NAA, "naa.624a9370" + "f" * 24)]

        with self.assertRaises(MountError):
            _client().mount_datastore(host, SERIAL, attempts=1, delay_s=0, companions=["0" * 23 + "1"])
        ds_sys.ResignatureUnresolvedVmfsVolume_Task.assert_not_called()

    def test_mount_skip_rescan(self):
        host = self._host()
        host.configManager.datastoreSystem.QueryUnresolvedVmfsVolumes.return_value = []

        with self.assertRaises(MountError):
            _client().mount_datastore(host, SERIAL, attempts=2, delay_s=0, rescan=False)
        host.configManager.storageSystem.RescanAllHba.assert_not_called()

    def test_mount_gives_up(self):
        host = self._host()
        host.configManager.datastoreSystem.QueryUnresolvedVmfsVolumes.return_value = []
        sleeps = []
        c = VSphereClient(Mock(), sleep=sleeps.append)

        with self.assertRaises(MountError):
            c.mount_datastore(host, SERIAL, attempts=3, delay_s=7)
        self.assertEqual(sleeps, [7, 7])
        self.assertEqual(host.configManager.storageSystem.RescanAllHba.call_count, 3)

    def test_unmount_and_detach(self):
        host = self._host()
        lun = Mock(canonicalName=NAA, uuid="lun-uuid")
        host.config.storageDevice.scsiLun = [lun]
        ss = host.configManager.storageSystem

        _client().unmount_datastore(host, Datastore("snap-ds", 1, 1, device=NAA, vmfs_uuid="u-1", ref=Mock()))

        ss.UnmountVmfsVolume.assert_called_once_with(vmfsUuid="u-1")
        ss.DetachScsiLun.assert_called_once_with(lunUuid="lun-uuid")

    def test_unmount_failure_raises(self):
        host = self._host()
        host.configManager.storageSystem.UnmountVmfsVolume.side_effect = RuntimeError("in use")

        with self.assertRaises(VMwareError):
            _client().unmount_datastore(host, Datastore("snap-ds", 1, 1, device=NAA, vmfs_uuid="u-1", ref=Mock()))


class TestVmxListing(unittest.TestCase):
    def test_lists_vmx_and_is_restartable(self):
        ds_ref = Mock()
        results = [
            Mock(folderPath="[snap-ds] web01", file=[Mock(path="web01.vmx")]),
            Mock(folderPath="[snap-ds] .sdd.sf", file=[Mock(path="junk.vmx")]),
            Mock(folderPath="[snap-ds] sql01/", file=[Mock(path="sql01.vmx")]),
        ]
        ds_ref.browser.SearchDatastoreSubFolders_Task.return_value = _task(result=results)
        listing = _client().find_vmx_files(Datastore("snap-ds", 1, 1, ref=ds_ref))

        first = list(listing)
        second = list(listing)

        self.assertEqual(first, ["[snap-ds] sql01/sql01.vmx", "[snap-ds] web01/web01.vmx"])
        self.assertEqual(first, second)
        self.assertEqual(ds_ref.browser.SearchDatastoreSubFolders_Task.call_count, 2)


class TestVms(unittest.TestCase):
    def _register(self, c, task):
        folder = Mock()
        folder.RegisterVM_Task.return_value = task
        with patch.object(c, "find_vm", return_value=None), \
                patch.object(c, "_resolve_folder", return_value=folder), \
                patch.object(c, "_resolve_pool", return_value=Mock()):
            return c.register_vm("[ds] sql01/sql01.vmx", Mock(), "DR-sql01"), folder

    def test_register(self):
        vm = Mock()
        result, folder = self._register(_client(), _task(result=vm))

        self.assertIs(result, vm)
        kwargs = folder.RegisterVM_Task.call_args[1]
        self.assertEqual(kwargs["path"], "[ds] sql01/sql01.vmx")
        self.assertEqual(kwargs["name"], "DR-sql01")
        self.assertFalse(kwargs["asTemplate"])

    def test_register_existing_name(self):
        c = _client()
        with patch.object(c, "find_vm", return_value=Mock()):
            with self.assertRaises(ConflictError):
                c.register_vm("[ds] sql01/sql01.vmx", Mock(), "DR-sql01")

    def test_register_duplicate_fault(self):
        fault = vim.fault.DuplicateName(name="DR-sql01")
        with self.assertRaises(ConflictError):
            self._register(_client(), _task("error", error=fault))

    def test_answer_pending_question(self):
        vm = Mock()
        vm.runtime.question.id = "q-1"
        vm.runtime.question.choice.choiceInfo = [
            Mock(key="0", label="Cancel"),
            Mock(key="1", label="I Moved It"),
            Mock(key="2", label="I Copied It"),
        ]

        self.assertTrue(_client().answer_copied_prompt(vm))
        vm.AnswerVM.assert_called_once_with(questionId="q-1", answerChoice="2")

    def test_answer_preseeds_uuid_action(self):
        vm = Mock()
        vm.runtime.question = None
        vm.ReconfigVM_Task.return_value = _task()

        self.assertTrue(_client().answer_copied_prompt(vm))
        spec = vm.ReconfigVM_Task.call_args[1]["spec"]
        self.assertEqual([(o.key, o.value) for o in spec.extraConfig], [("uuid.action", "create")])

    def test_power_off_only_when_on(self):
        vm = Mock()
        vm.runtime.powerState = "poweredOff"
        _client().power_off(vm)
        vm.PowerOffVM_Task.assert_not_called()

    def test_power_on_failure(self):
        vm = Mock()
        vm.PowerOnVM_Task.return_value = _task("error", error=Mock(msg="no license"))
        with self.assertRaises(VMwareError):
            _client().power_on(vm)

    def test_vm_summary(self):
        vm = Mock()
        vm.config.hardware.numCPU = 4
        vm.config.hardware.memoryMB = 16384
        vm.config.hardware.device = [vim.vm.device.VirtualDisk(), vim.vm.device.VirtualDisk(), vim.vm.device.VirtualVmxnet3()]
        net = Mock()
        net.name = "DR-Network"
        vm.network = [net]
        vm.runtime.powerState = "poweredOn"

        s = _client().vm_summary(vm)

        self.assertEqual((s.vcpu, s.memory_mb, s.disk_count), (4, 16384, 2))
        self.assertEqual(s.networks, ("DR-Network",))
        self.assertEqual(s.power_state, "poweredOn")


if __name__ == "__main__":
    unittest.main()
