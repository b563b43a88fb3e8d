# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/array/models.py

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple


def _ts_from_ms(value: Any) -> _dt.datetime:
    """Array timestamps are epoch milliseconds (UTC)."""
    try:
        return _dt.datetime.fromtimestamp(int(value) / 1000.0, tz=_dt.timezone.utc)
    except (TypeError, ValueError):
        return _dt.datetime.fromtimestamp(0, tz=_dt.timezone.utc)


def _ref_name(item: Dict[str, Any], key: str) -> Optional[str]:
    ref = item.get(key)
    if isinstance(ref, dict):
        return ref.get("name") or None
    return ref or None


@dataclass(frozen=True)
class ProtectionGroup:
    name: str
    volume_count: int = 0

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "ProtectionGroup":
        return cls(name=str(item["name"]), volume_count=int(item.get("volume_count") or 0))


@dataclass(frozen=True)
class VolumeSnapshot:
    name: str
    source_volume: str
    size: int  # provisioned bytes

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "VolumeSnapshot":
        name = str(item["name"])
        source = _ref_name(item, "source") or name.rsplit(".", 1)[-1]
        return cls(name=name, source_volume=source, size=int(item.get("provisioned") or 0))


@dataclass(frozen=True)
class Snapshot:
    protection_group: str
    name: str
    created: _dt.datetime
    volumes: Tuple[VolumeSnapshot, ...] = ()

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "Snapshot":
        name = str(item["name"])
        group = _ref_name(item, "source") or name.split(".", 1)[0]
        return cls(protection_group=group, name=name, created=_ts_from_ms(item.get("created")))

    def with_volumes(self, volumes: Tuple[VolumeSnapshot, ...]) -> "Snapshot":
        return Snapshot(self.protection_group, self.name, self.created, tuple(volumes))

    @property
    def suffix(self) -> str:
        """The part after "<group>." ("PG-Veeam.2026-02-15" -> "2026-02-15")."""
        prefix = self.protection_group + "."
        return self.name[len(prefix):] if self.name.startswith(prefix) else self.name


@dataclass(frozen=True)
class ClonedVolume:
    name: str
    source: VolumeSnapshot
    serial: Optional[str]  # None for preview placeholders
    size: int

    @classmethod
    def from_api(cls, item: Dict[str, Any], source: VolumeSnapshot) -> "ClonedVolume":
        serial = item.get("serial")
        return cls(
            name=str(item["name"]),
            source=source,
            serial=str(serial).lower() if serial else None,
            size=int(item.get("provisioned") or source.size),
        )


@dataclass(frozen=True)
class ArrayHost:
    name: str
    wwns: Tuple[str, ...] = ()
    iqns: Tuple[str, ...] = ()
    host_group: Optional[str] = None

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "ArrayHost":
        return cls(
            name=str(item["name"]),
            wwns=tuple(str(w) for w in (item.get("wwns") or ())),
            iqns=tuple(str(i) for i in (item.get("iqns") or ())),
            host_group=_ref_name(item, "host_group"),
        )


@dataclass(frozen=True)
class HostGroup:
    name: str
    host_count: int = 0

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "HostGroup":
        return cls(name=str(item["name"]), host_count=int(item.get("host_count") or 0))


@dataclass(frozen=True)
class HostMapping:
    """
    Where cloned volumes get presented: a whole host group or one host.

    source: "inferred" (initiator match), "manual" (operator choice) or "override" (config).
    """

    kind: str  # "host_group" | "host"
    name: str
    source: str = "inferred"

    HOST_GROUP = "host_group"
    HOST = "host"

    @property
    def is_group(self) -> bool:
        return self.kind == self.HOST_GROUP

    def __str__(self) -> str:
        return f"{'host group' if self.is_group else 'host'} {self.name}"
