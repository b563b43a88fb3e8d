# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/recovery/models.py
"""
Run-level records: the action ledger entries and the recovered-VM table.

`RecoveryResult.action_rows()` and `RecoveryResult.vm_rows()` are the stable
tabular contract handed to report renderers.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional


class ActionStatus(Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class ActionKind(Enum):
    """Mutating actions the pipeline performs; the value is the ledger label."""

    CLONE = "Clone Volume"
    PRESENT = "Present Volume"
    RESCAN = "Rescan Storage"
    MOUNT = "Mount Datastore"
    RENAME = "Rename Datastore"
    REGISTER = "Register VM"
    ANSWER_PROMPT = "Answer Copied Prompt"
    NETWORK = "Reconfigure Network"
    POWER_ON = "Power On VM"
    COMPENSATE = "Compensate"

    @property
    def compensable(self) -> bool:
        return self in _COMPENSABLE


_COMPENSABLE = frozenset(
    {ActionKind.CLONE, ActionKind.PRESENT, ActionKind.MOUNT, ActionKind.REGISTER, ActionKind.POWER_ON}
)


class VmStatus(Enum):
    PENDING = "Pending"
    REGISTERED = "Registered"
    FAILED = "Failed"
    SKIPPED = "Skipped"


def _frozen(data: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class ActionRecord:
    """
    One attempted mutating action and its final outcome.

    `data` carries what compensation needs to undo the action (names, object
    references); `compensates` is the seq of the record an undo step reverses.
    """

    seq: int
    timestamp: _dt.datetime
    kind: ActionKind
    target: str
    status: ActionStatus
    detail: str = ""
    data: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)
    compensates: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", _frozen(self.data))

    @property
    def action(self) -> str:
        return self.kind.value

    def row(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "target": self.target,
            "status": self.status.value,
            "detail": self.detail,
            "compensates": self.compensates,
        }


@dataclass
class RecoveredVM:
    name: str
    original_name: str
    vmx_path: str
    datastore: str
    status: VmStatus = VmStatus.PENDING
    vcpu: Optional[int] = None
    memory_mb: Optional[int] = None
    disk_count: Optional[int] = None
    network: str = ""
    power_state: str = "unknown"
    detail: str = ""
    ref: Any = field(default=None, compare=False, repr=False)

    def row(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "original_name": self.original_name,
            "vmx_path": self.vmx_path,
            "vcpu": self.vcpu,
            "memory_mb": self.memory_mb,
            "disk_count": self.disk_count,
            "network": self.network,
            "power_state": self.power_state,
            "status": self.status.value,
            "detail": self.detail,
        }


@dataclass
class RecoveryResult:
    run_id: str
    succeeded: bool
    preview: bool = False
    recovered_vms: List[RecoveredVM] = field(default_factory=list)
    actions: List[ActionRecord] = field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    compensated: bool = False
    protection_group: Optional[str] = None
    snapshot: Optional[str] = None
    mapping: Optional[str] = None

    def action_rows(self) -> List[Dict[str, Any]]:
        return [a.row() for a in self.actions]

    def vm_rows(self) -> List[Dict[str, Any]]:
        return [v.row() for v in self.recovered_vms]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "succeeded": self.succeeded,
            "preview": self.preview,
            "protection_group": self.protection_group,
            "snapshot": self.snapshot,
            "mapping": self.mapping,
            "failed_stage": self.failed_stage,
            "error": self.error,
            "compensated": self.compensated,
            "actions": self.action_rows(),
            "recovered_vms": self.vm_rows(),
        }
