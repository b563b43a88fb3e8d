# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/recovery/topology.py
"""
Map a hypervisor host to its array-side identity.

The two systems name the same physical initiators differently: the array keeps
WWNs as "21:00:00:24:ff:4c:c3:d0", the hypervisor reports a 64-bit integer. Both
sides are normalized to 16 lowercase hex digits before comparing. IQNs are
compared verbatim.
"""

from __future__ import annotations

import logging
import re
from typing import FrozenSet, Iterable, Optional, Sequence

from ..array.models import ArrayHost, HostMapping
from ..vmware.models import HostInitiators

_WWN_SEP_RE = re.compile(r"[\s:\-.]")
_HEX16_RE = re.compile(r"^[0-9a-f]{16}$")


def normalize_wwn(value: str) -> Optional[str]:
    """Canonical WWN (16 lowercase hex digits) or None when `value` is not a WWN."""
    s = _WWN_SEP_RE.sub("", str(value or "")).lower()
    if s.startswith("0x"):
        s = s[2:]
    return s if _HEX16_RE.match(s) else None


def _wwn_set(values: Iterable[str]) -> FrozenSet[str]:
    return frozenset(w for w in (normalize_wwn(v) for v in values) if w)


def _iqn_set(values: Iterable[str]) -> FrozenSet[str]:
    return frozenset(v for v in values if v)


class TopologyResolver:
    """
    Resolve host initiators against the array host inventory.

    The first array host (inventory order) sharing any initiator wins; later
    matches are never merged in. Same inputs always give the same mapping.
    """

    def __init__(self, logger: logging.Logger, inventory: Sequence[ArrayHost]) -> None:
        self.logger = logger
        self.inventory = list(inventory)

    def match_host(self, initiators: HostInitiators) -> Optional[ArrayHost]:
        wwns = _wwn_set(initiators.wwns)
        iqns = _iqn_set(initiators.iqns)
        if not wwns and not iqns:
            return None
        for host in self.inventory:
            if wwns & _wwn_set(host.wwns) or iqns & _iqn_set(host.iqns):
                return host
        return None

    def resolve(self, initiators: HostInitiators) -> Optional[HostMapping]:
        host = self.match_host(initiators)
        if host is None:
            self.logger.warning(
                "No array host shares an initiator with %s (%d WWN, %d IQN)",
                initiators.host,
                len(initiators.wwns),
                len(initiators.iqns),
            )
            return None
        if host.host_group:
            self.logger.info("%s -> array host %s in host group %s", initiators.host, host.name, host.host_group)
            return HostMapping(HostMapping.HOST_GROUP, host.host_group)
        self.logger.warning(
            "%s -> array host %s (no host group): volumes will only be visible to this host",
            initiators.host,
            host.name,
        )
        return HostMapping(HostMapping.HOST, host.name)
