# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/recovery/compensator.py
"""
Best-effort rollback of a failed run.

Walks the ledger's Success records newest-first and undoes each one:
power off -> unregister VM -> unmount datastore -> remove host connection ->
destroy (and eradicate) the clone. Every undo step is isolated and appends its
own ledger record; nothing here raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..core.logger import Log
from .ledger import ActionLedger
from .models import ActionKind, ActionRecord, ActionStatus

Confirm = Callable[[ActionRecord], bool]


@dataclass
class CompensationReport:
    undone: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    declined: List[int] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failed and not self.declined


class Compensator:
    def __init__(
        self,
        logger: logging.Logger,
        array: Any,
        hypervisor: Any,
        *,
        eradicate: bool = True,
        confirm: Optional[Confirm] = None,
    ) -> None:
        self.logger = logger
        self.array = array
        self.hypervisor = hypervisor
        self.eradicate = eradicate
        self.confirm = confirm
        self._undo: Dict[ActionKind, Callable[[ActionRecord], str]] = {
            ActionKind.POWER_ON: self._power_off,
            ActionKind.REGISTER: self._unregister,
            ActionKind.MOUNT: self._unmount,
            ActionKind.PRESENT: self._disconnect,
            ActionKind.CLONE: self._destroy,
        }

    def compensate(self, ledger: ActionLedger, *, force: bool = True) -> CompensationReport:
        """
        Undo every compensable Success record in strict reverse order.

        With force=False each step is gated by the `confirm` callback (declined
        steps are recorded as Skipped).
        """
        report = CompensationReport()
        todo = ledger.compensable_successes()
        if not todo:
            return report
        Log.step(self.logger, f"Compensating {len(todo)} action(s)")

        for rec in todo:
            label = f"undo {rec.action}"
            if not force and (self.confirm is None or not self.confirm(rec)):
                ledger.record(ActionKind.COMPENSATE, rec.target, ActionStatus.SKIPPED, f"{label}: declined", compensates=rec.seq)
                report.declined.append(rec.seq)
                continue
            try:
                detail = self._undo[rec.kind](rec)
            except Exception as e:
                self.logger.error("Compensation of #%d %s %s failed: %s", rec.seq, rec.action, rec.target, e)
                ledger.record(ActionKind.COMPENSATE, rec.target, ActionStatus.FAILED, f"{label}: {e}", compensates=rec.seq)
                report.failed.append(rec.seq)
                continue
            ledger.record(ActionKind.COMPENSATE, rec.target, ActionStatus.SUCCESS, f"{label}: {detail}", compensates=rec.seq)
            report.undone.append(rec.seq)

        if report.clean:
            Log.ok(self.logger, f"Compensation complete ({len(report.undone)} undone)")
        else:
            Log.warn(
                self.logger,
                "Compensation incomplete; leftover artifacts need manual cleanup",
                failed=len(report.failed),
                declined=len(report.declined),
            )
        return report

    # Undo steps. Each returns a short detail string or raises.

    def _power_off(self, rec: ActionRecord) -> str:
        self.hypervisor.power_off(rec.data["vm"])
        return "powered off"

    def _unregister(self, rec: ActionRecord) -> str:
        self.hypervisor.unregister_vm(rec.data["vm"])
        return "unregistered (files kept)"

    def _unmount(self, rec: ActionRecord) -> str:
        if rec.data.get("shared_with"):
            return f"extent of the datastore mounted for {rec.data['shared_with']}; unmounted there"
        self.hypervisor.unmount_datastore(rec.data["host"], rec.data["datastore"])
        return "unmounted"

    def _disconnect(self, rec: ActionRecord) -> str:
        self.array.disconnect_host_mapping(rec.data["volume"], rec.data["mapping"])
        return f"disconnected from {rec.data['mapping']}"

    def _destroy(self, rec: ActionRecord) -> str:
        if self.array.get_volume(rec.data["volume"]) is None:
            return "already gone"
        if not self.array.destroy_volume(rec.data["volume"], eradicate=self.eradicate):
            raise RuntimeError(f"array refused to destroy {rec.data['volume']}")
        return "destroyed and eradicated" if self.eradicate else "destroyed"
