# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/recovery/orchestrator.py
"""
Snapshot -> running VMs, as a sequence of fail-fast stages.

  connect array -> connect hypervisor -> select snapshot -> enumerate volume
  snapshots -> select target host -> clone volumes -> resolve host mapping ->
  present volumes -> mount datastores -> register VMs -> power on

There is no transaction spanning the array and vCenter. Every mutating call
goes through `_mutate`, which records its outcome in the run's ActionLedger;
on failure the Compensator replays that ledger backwards. In preview mode
`_mutate` records Skipped and returns a placeholder instead of calling out, so
real and preview runs share one code path.
"""

from __future__ import annotations

import datetime as _dt
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..array.client import ArrayClient
from ..array.models import ClonedVolume, HostMapping, Snapshot
from ..core.config import RecoveryConfig
from ..core.exceptions import ConflictError, MountError, NotFoundError, PresentationError, Snap2VmError, StageError
from ..core.logger import Log
from ..core.utils import U
from ..vmware.client import VSphereClient
from ..vmware.datastore import under_datastore, vm_name_from_vmx, vmx_selected
from ..vmware.models import Datastore, HostInitiators
from .compensator import CompensationReport, Compensator
from .ledger import ActionLedger, Clock
from .models import ActionKind, ActionStatus, RecoveredVM, RecoveryResult, VmStatus
from .topology import TopologyResolver

# chooser(title, options) -> picked option, or None to decline
Chooser = Callable[[str, Sequence[str]], Optional[str]]

_ARRAY_NAME_MAX = 63


def _utc_now() -> _dt.datetime:
    return _dt.datetime.now(tz=_dt.timezone.utc)


@dataclass
class RecoveryRun:
    """Mutable state of one run. Owned by the orchestrator, handed to each stage."""

    run_id: str
    ledger: ActionLedger
    preview: bool
    protection_group: Optional[str] = None
    snapshot: Optional[Snapshot] = None
    host: Any = None
    initiators: Optional[HostInitiators] = None
    mapping: Optional[HostMapping] = None
    clones: List[ClonedVolume] = field(default_factory=list)
    datastores: List[Tuple[ClonedVolume, Datastore]] = field(default_factory=list)
    vms: List[RecoveredVM] = field(default_factory=list)
    stage: Optional[str] = None
    compensation: Optional[CompensationReport] = None


class RecoveryOrchestrator:
    def __init__(
        self,
        logger: logging.Logger,
        config: RecoveryConfig,
        *,
        array: Any = None,
        hypervisor: Any = None,
        chooser: Optional[Chooser] = None,
        clock: Clock = _utc_now,
    ) -> None:
        self.logger = logger
        self.config = config
        self.chooser = chooser
        self.clock = clock
        self.array = array or ArrayClient(
            logger,
            api_version=config.array_api_version,
            insecure=config.array.insecure,
            timeout=config.array.timeout,
        )
        self.hypervisor = hypervisor or VSphereClient(
            logger,
            insecure=config.vcenter.insecure,
            timeout=config.vcenter.timeout,
            naa_vendor_prefix=config.naa_vendor_prefix,
            task_poll_attempts=config.task_poll_attempts,
            task_poll_delay_s=config.task_poll_delay_s,
        )
        self.run: Optional[RecoveryRun] = None
        self.last_error: Optional[StageError] = None

    def _stages(self) -> List[Tuple[str, Callable[[RecoveryRun], None]]]:
        return [
            ("connect array", self._connect_array),
            ("connect hypervisor", self._connect_hypervisor),
            ("select snapshot", self._select_snapshot),
            ("enumerate volume snapshots", self._enumerate_volumes),
            ("select target host", self._select_host),
            ("clone volumes", self._clone_volumes),
            ("resolve host mapping", self._resolve_mapping),
            ("present volumes", self._present_volumes),
            ("mount datastores", self._mount_datastores),
            ("register VMs", self._register_vms),
            ("power on", self._power_on),
        ]

    def execute(self) -> RecoveryResult:
        cfg = self.config
        run = RecoveryRun(
            run_id=self.clock().strftime("%Y%m%d-%H%M%S"),
            ledger=ActionLedger(self.clock),
            preview=cfg.preview,
        )
        self.run = run
        self.last_error = None
        Log.banner(self.logger, f"snap2vm run {run.run_id}{' (preview)' if run.preview else ''}")

        failed_stage: Optional[str] = None
        compensated = False
        try:
            for name, stage in self._stages():
                run.stage = name
                Log.step(self.logger, name.capitalize())
                try:
                    stage(run)
                except Exception as e:
                    err = e if isinstance(e, StageError) else StageError(name, e)
                    err.with_context(run_id=run.run_id)
                    self.last_error = err
                    failed_stage = name
                    break

            if self.last_error is not None:
                Log.fail(self.logger, f"Recovery failed at '{failed_stage}': {self.last_error.cause}")
                if cfg.cleanup_on_failure:
                    compensator = Compensator(
                        self.logger,
                        self.array,
                        self.hypervisor,
                        eradicate=cfg.eradicate_on_cleanup,
                    )
                    run.compensation = compensator.compensate(run.ledger, force=True)
                    compensated = True
                    self._mark_rolled_back(run)
                else:
                    Log.warn(self.logger, "cleanup_on_failure is off; leaving partial artifacts in place")
        finally:
            self._disconnect()

        result = RecoveryResult(
            run_id=run.run_id,
            succeeded=self.last_error is None,
            preview=run.preview,
            recovered_vms=list(run.vms),
            actions=run.ledger.records,
            failed_stage=failed_stage,
            error=str(self.last_error.cause) if self.last_error else None,
            compensated=compensated,
            protection_group=run.protection_group,
            snapshot=run.snapshot.name if run.snapshot else None,
            mapping=str(run.mapping) if run.mapping else None,
        )
        if result.succeeded:
            Log.ok(self.logger, f"Recovery complete: {len(run.vms)} VM(s)", **run.ledger.counts())
        return result

    def _disconnect(self) -> None:
        for client in (self.hypervisor, self.array):
            try:
                client.disconnect()
            except Exception as e:
                self.logger.debug("Disconnect failed (ignored): %s", e)

    def _mark_rolled_back(self, run: RecoveryRun) -> None:
        """Bring the VM rows in line with what compensation undid."""
        if run.compensation is None:
            return
        undone = set(run.compensation.undone)
        for rec in run.ledger:
            if rec.seq not in undone or rec.kind not in (ActionKind.REGISTER, ActionKind.POWER_ON):
                continue
            ref = rec.data.get("vm")
            for vm in run.vms:
                if vm.ref is None or vm.ref is not ref:
                    continue
                if rec.kind is ActionKind.POWER_ON:
                    vm.power_state = "poweredOff"
                else:
                    vm.status = VmStatus.FAILED
                    vm.detail = "rolled back"
                    vm.power_state = "unregistered"

    # Mutation wrapper

    def _mutate(
        self,
        run: RecoveryRun,
        kind: ActionKind,
        target: str,
        call: Callable[[], Any],
        *,
        placeholder: Any = None,
        data: Any = None,
        describe: Optional[Callable[[Any], str]] = None,
        fatal: bool = True,
        skip_on_conflict: bool = False,
    ) -> Any:
        """
        Run one mutating call and record its outcome.

        `data` is the compensation payload (a mapping or a function of the call's
        result). Non-fatal failures are recorded and return None.
        """
        if run.preview:
            run.ledger.record(kind, target, ActionStatus.SKIPPED, "preview")
            return placeholder
        try:
            value = call()
        except ConflictError as e:
            if skip_on_conflict:
                Log.warn(self.logger, f"{kind.value} {target}: {e.msg}; skipping")
                run.ledger.record(kind, target, ActionStatus.SKIPPED, e.msg)
                return None
            run.ledger.record(kind, target, ActionStatus.FAILED, e.msg)
            raise
        except Exception as e:
            run.ledger.record(kind, target, ActionStatus.FAILED, str(e))
            if fatal:
                raise
            Log.warn(self.logger, f"{kind.value} {target} failed (continuing): {e}")
            return None
        payload = data(value) if callable(data) else data
        detail = describe(value) if describe else ""
        run.ledger.record(kind, target, ActionStatus.SUCCESS, detail, data=payload)
        return value

    # Stages

    def _connect_array(self, run: RecoveryRun) -> None:
        ep = self.config.array
        self.array.connect(ep.endpoint, ep.auth, port=ep.port)

    def _connect_hypervisor(self, run: RecoveryRun) -> None:
        ep = self.config.vcenter
        self.hypervisor.connect(ep.endpoint, ep.auth, port=ep.port)

    def _pick_group(self) -> str:
        names = [g.name for g in self.array.list_protection_groups()]
        wanted = self.config.protection_group
        if wanted:
            if wanted not in names:
                raise NotFoundError(f"protection group {wanted} not found", context={"available": names})
            return wanted
        if self.chooser is not None and names:
            picked = self.chooser("Protection group", names)
            if picked:
                return picked
            raise NotFoundError("no protection group selected")
        if len(names) == 1:
            return names[0]
        raise NotFoundError(f"protection_group not set and the array has {len(names)} groups", context={"available": names})

    def _select_snapshot(self, run: RecoveryRun) -> None:
        group = self._pick_group()
        run.protection_group = group
        snaps = self.array.list_snapshots(group)
        if not snaps:
            raise NotFoundError(f"protection group {group} has no snapshots")

        wanted = self.config.snapshot
        if wanted:
            match = [s for s in snaps if s.name == wanted or s.suffix == wanted]
            if not match:
                raise NotFoundError(f"snapshot {wanted} not found in {group}")
            run.snapshot = match[0]
        else:
            run.snapshot = snaps[0]
        self.logger.info("Using snapshot %s (created %s)", run.snapshot.name, run.snapshot.created.isoformat())

    def _enumerate_volumes(self, run: RecoveryRun) -> None:
        vols = self.array.list_volume_snapshots(run.snapshot.name)
        run.snapshot = run.snapshot.with_volumes(tuple(vols))
        for v in vols:
            self.logger.info("  %s (%s, %s)", v.name, v.source_volume, U.human_bytes(v.size))

    def _select_host(self, run: RecoveryRun) -> None:
        run.host = self.hypervisor.get_host(self.config.target_host)
        run.initiators = self.hypervisor.host_initiators(run.host)

    def _clone_name(self, run: RecoveryRun, source_volume: str) -> str:
        # the run id suffix must survive the array name length limit
        base = U.array_safe_name(f"{self.config.clone_prefix}{source_volume}", max_len=_ARRAY_NAME_MAX - len(run.run_id) - 1)
        return f"{base}-{run.run_id}"

    def _clone_volumes(self, run: RecoveryRun) -> None:
        for vs in run.snapshot.volumes:
            name = self._clone_name(run, vs.source_volume)
            clone = self._mutate(
                run,
                ActionKind.CLONE,
                name,
                lambda: self.array.clone_volume(vs, name),
                placeholder=ClonedVolume(name=name, source=vs, serial=None, size=vs.size),
                data=lambda c: {"volume": c.name},
                describe=lambda c: f"from {vs.name} serial={c.serial}",
            )
            run.clones.append(clone)

    def _resolve_mapping(self, run: RecoveryRun) -> None:
        cfg = self.config
        if cfg.array_host_group:
            run.mapping = HostMapping(HostMapping.HOST_GROUP, cfg.array_host_group, source="override")
        elif cfg.array_host:
            run.mapping = HostMapping(HostMapping.HOST, cfg.array_host, source="override")
        else:
            resolver = TopologyResolver(self.logger, self.array.list_hosts())
            run.mapping = resolver.resolve(run.initiators) or self._manual_mapping()
        self.logger.info("Presenting to %s (%s)", run.mapping, run.mapping.source)

    def _manual_mapping(self) -> HostMapping:
        groups = [g.name for g in self.array.list_host_groups()]
        if self.chooser is not None and groups:
            picked = self.chooser("Array host group", groups)
            if picked:
                return HostMapping(HostMapping.HOST_GROUP, picked, source="manual")
        raise PresentationError(
            f"cannot infer an array host for {self.config.target_host}; set array_host_group or array_host"
        )

    def _present_volumes(self, run: RecoveryRun) -> None:
        mapping = run.mapping
        for clone in run.clones:
            self._mutate(
                run,
                ActionKind.PRESENT,
                clone.name,
                lambda: self.array.connect_host_mapping(clone.name, mapping),
                data={"volume": clone.name, "mapping": mapping},
                describe=lambda _: f"to {mapping}",
            )

    def _mount_datastores(self, run: RecoveryRun) -> None:
        cfg = self.config
        hv = self.hypervisor
        serials = [c.serial for c in run.clones if c.serial]
        mounted: Dict[str, str] = {}  # vmfs uuid -> first clone backing it
        for clone in run.clones:
            if not run.preview and not run.ledger.succeeded(ActionKind.PRESENT, clone.name):
                raise MountError(f"{clone.name} has not been presented to {run.mapping}")
            companions = [s for s in serials if s != clone.serial]
            ds = self._mutate(
                run,
                ActionKind.MOUNT,
                clone.name,
                lambda: hv.mount_datastore(
                    run.host,
                    clone.serial,
                    attempts=cfg.mount_attempts,
                    delay_s=cfg.mount_delay_s,
                    rescan=not cfg.skip_rescan,
                    companions=companions,
                ),
                placeholder=Datastore(name=f"snap-{clone.name}", capacity=clone.size, free_space=0),
                data=lambda d: {"datastore": d, "host": run.host, "shared_with": mounted.get(d.vmfs_uuid or "")},
                describe=lambda d: self._describe_mount(d, mounted),
            )
            if ds.vmfs_uuid and ds.vmfs_uuid in mounted:
                self.logger.info("%s is another extent of %s", clone.name, ds.name)
                continue
            if ds.vmfs_uuid:
                mounted[ds.vmfs_uuid] = clone.name
            if cfg.datastore_prefix:
                new_name = f"{cfg.datastore_prefix}{clone.name}"
                renamed = self._mutate(
                    run,
                    ActionKind.RENAME,
                    ds.name,
                    lambda: hv.rename_datastore(ds, new_name),
                    placeholder=replace(ds, name=new_name),
                    describe=lambda d: f"-> {d.name}",
                    fatal=False,
                )
                ds = renamed or ds
            run.datastores.append((clone, ds))

        if run.mapping.is_group:
            for peer in hv.cluster_peers(run.host):
                self._mutate(
                    run,
                    ActionKind.RESCAN,
                    peer.name,
                    lambda: hv.rescan_storage(peer),
                    fatal=False,
                )

    @staticmethod
    def _describe_mount(ds: Datastore, mounted: Dict[str, str]) -> str:
        first = mounted.get(ds.vmfs_uuid or "")
        if first:
            return f"{ds.name} (extent of the datastore mounted for {first})"
        return f"{ds.name} ({U.human_bytes(ds.capacity)})"

    def _register_vms(self, run: RecoveryRun) -> None:
        for _clone, ds in run.datastores:
            if ds.placeholder:
                run.ledger.record(ActionKind.REGISTER, ds.name, ActionStatus.SKIPPED, "preview: VMX discovery needs a mounted datastore")
                continue
            found = 0
            for vmx in self.hypervisor.find_vmx_files(ds):
                if not under_datastore(vmx, ds.name):
                    self.logger.warning("Ignoring %s: not on datastore %s", vmx, ds.name)
                    continue
                found += 1
                self._register_one(run, ds, vmx)
            if not found:
                Log.warn(self.logger, f"No VMX files found on {ds.name}")

    def _register_one(self, run: RecoveryRun, ds: Datastore, vmx: str) -> None:
        cfg = self.config
        hv = self.hypervisor
        original = vm_name_from_vmx(vmx)
        vm = RecoveredVM(name=f"{cfg.vm_prefix}{original}", original_name=original, vmx_path=vmx, datastore=ds.name)
        run.vms.append(vm)

        if not vmx_selected(vmx, cfg.vm_include):
            vm.status = VmStatus.SKIPPED
            vm.detail = "excluded by vm_include"
            return

        try:
            ref = self._mutate(
                run,
                ActionKind.REGISTER,
                vm.name,
                lambda: hv.register_vm(vmx, run.host, vm.name, folder=cfg.folder, resource_pool=cfg.resource_pool),
                data=lambda r: {"vm": r},
                describe=lambda _: vmx,
                skip_on_conflict=True,
            )
        except Snap2VmError as e:
            vm.status = VmStatus.FAILED
            vm.detail = e.msg
            raise
        if ref is None:
            vm.status = VmStatus.SKIPPED
            vm.detail = "name already registered"
            return

        vm.status = VmStatus.REGISTERED
        vm.ref = ref
        if cfg.answer_copied_prompt:
            self._mutate(run, ActionKind.ANSWER_PROMPT, vm.name, lambda: hv.answer_copied_prompt(ref), fatal=False)
        if cfg.port_group:
            self._mutate(
                run,
                ActionKind.NETWORK,
                vm.name,
                lambda: hv.reconfigure_network(ref, cfg.port_group),
                describe=lambda _: cfg.port_group,
                fatal=False,
            )
        self._refresh_summary(vm)

    def _power_on(self, run: RecoveryRun) -> None:
        if not self.config.power_on:
            return
        for vm in run.vms:
            if vm.status is not VmStatus.REGISTERED:
                continue
            self._mutate(
                run,
                ActionKind.POWER_ON,
                vm.name,
                lambda: self.hypervisor.power_on(vm.ref, answer_prompt=self.config.answer_copied_prompt),
                data={"vm": vm.ref},
                fatal=False,
            )
            self._refresh_summary(vm)

    def _refresh_summary(self, vm: RecoveredVM) -> None:
        try:
            s = self.hypervisor.vm_summary(vm.ref)
        except Exception as e:
            self.logger.debug("No summary for %s: %s", vm.name, e)
            return
        vm.vcpu = s.vcpu
        vm.memory_mb = s.memory_mb
        vm.disk_count = s.disk_count
        vm.network = ", ".join(s.networks)
        vm.power_state = s.power_state
