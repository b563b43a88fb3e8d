# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/recovery/ledger.py

from __future__ import annotations

import datetime as _dt
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from .models import ActionKind, ActionRecord, ActionStatus

Clock = Callable[[], _dt.datetime]


def _utc_now() -> _dt.datetime:
    return _dt.datetime.now(tz=_dt.timezone.utc)


class ActionLedger:
    """
    Append-only log of mutating actions for one run.

    Records are never edited or removed; compensation appends its own records.
    """

    def __init__(self, clock: Clock = _utc_now) -> None:
        self._records: List[ActionRecord] = []
        self._clock = clock

    def record(
        self,
        kind: ActionKind,
        target: str,
        status: ActionStatus,
        detail: str = "",
        *,
        data: Optional[Mapping[str, Any]] = None,
        compensates: Optional[int] = None,
    ) -> ActionRecord:
        rec = ActionRecord(
            seq=len(self._records) + 1,
            timestamp=self._clock(),
            kind=kind,
            target=target,
            status=status,
            detail=detail,
            data=data or {},
            compensates=compensates,
        )
        self._records.append(rec)
        return rec

    def __iter__(self) -> Iterator[ActionRecord]:
        return iter(list(self._records))

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> List[ActionRecord]:
        return list(self._records)

    def find(self, kind: ActionKind, target: str, status: ActionStatus = ActionStatus.SUCCESS) -> Optional[ActionRecord]:
        for rec in self._records:
            if rec.kind is kind and rec.target == target and rec.status is status:
                return rec
        return None

    def succeeded(self, kind: ActionKind, target: str) -> bool:
        return self.find(kind, target) is not None

    def compensable_successes(self) -> List[ActionRecord]:
        """Success records that have an undo, newest first, excluding ones already undone."""
        undone = {r.compensates for r in self._records if r.kind is ActionKind.COMPENSATE and r.status is ActionStatus.SUCCESS}
        todo = [r for r in self._records if r.status is ActionStatus.SUCCESS and r.kind.compensable and r.seq not in undone]
        return list(reversed(todo))

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for rec in self._records:
            out[rec.status.value] = out.get(rec.status.value, 0) + 1
        return out

    def rows(self) -> List[Dict[str, Any]]:
        return [r.row() for r in self._records]
