# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/vmware/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Tuple


@dataclass(frozen=True)
class HostInitiators:
    """Storage initiators of one ESXi host, as reported by its HBAs."""

    host: str
    wwns: Tuple[str, ...] = ()  # FC port WWNs, 16 hex digits
    iqns: Tuple[str, ...] = ()  # iSCSI names, verbatim

    @property
    def empty(self) -> bool:
        return not self.wwns and not self.iqns


@dataclass(frozen=True)
class Datastore:
    name: str
    capacity: int
    free_space: int
    device: Optional[str] = None  # canonical NAA name of the backing LUN
    vmfs_uuid: Optional[str] = None
    ref: Any = field(default=None, compare=False, repr=False)  # vim.Datastore, None in preview

    @property
    def placeholder(self) -> bool:
        return self.ref is None


@dataclass(frozen=True)
class VmSummary:
    vcpu: Optional[int] = None
    memory_mb: Optional[int] = None
    disk_count: Optional[int] = None
    networks: Tuple[str, ...] = ()
    power_state: str = "unknown"
