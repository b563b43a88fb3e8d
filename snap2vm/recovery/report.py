# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/recovery/report.py
"""
Render a RecoveryResult: a rich console summary and a JSON dump of the
row contract (`RecoveryResult.to_dict()`).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..core.utils import U
from .models import ActionStatus, RecoveryResult, VmStatus

_STATUS_STYLE = {
    ActionStatus.SUCCESS.value: "green",
    ActionStatus.FAILED.value: "red",
    ActionStatus.SKIPPED.value: "yellow",
    VmStatus.REGISTERED.value: "green",
    VmStatus.FAILED.value: "red",
    VmStatus.SKIPPED.value: "yellow",
}


def _styled(status: str) -> str:
    style = _STATUS_STYLE.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def _cell(value: object) -> str:
    """Plain text cell; datastore paths like "[ds] vm/vm.vmx" are not markup."""
    return "" if value is None else escape(str(value))


def action_table(result: RecoveryResult) -> Table:
    table = Table(title="Actions", show_lines=False)
    for col in ("#", "Time", "Action", "Target", "Status", "Detail"):
        table.add_column(col, overflow="fold")
    for row in result.action_rows():
        undo = f" (undo #{row['compensates']})" if row["compensates"] else ""
        table.add_row(
            str(row["seq"]),
            row["timestamp"][11:19],
            _cell(row["action"] + undo),
            _cell(row["target"]),
            _styled(row["status"]),
            _cell(row["detail"]),
        )
    return table


def vm_table(result: RecoveryResult) -> Table:
    table = Table(title="Recovered VMs")
    for col in ("Name", "Original", "VMX", "vCPU", "Memory MB", "Disks", "Network", "Power", "Status"):
        table.add_column(col, overflow="fold")
    for row in result.vm_rows():
        table.add_row(
            _cell(row["name"]),
            _cell(row["original_name"]),
            _cell(row["vmx_path"]),
            _cell(row["vcpu"]),
            _cell(row["memory_mb"]),
            _cell(row["disk_count"]),
            _cell(row["network"]),
            _cell(row["power_state"]),
            _styled(row["status"]),
        )
    return table


def render_summary(result: RecoveryResult, console: Optional[Console] = None) -> None:
    console = console or Console()
    if result.succeeded:
        headline = "[green]Recovery succeeded[/green]"
    else:
        stage = escape(result.failed_stage or "")
        error = escape(result.error or "")
        headline = f"[red]Recovery failed[/red] at [bold]{stage}[/bold]: {error}"
    if result.preview:
        headline += "  [yellow](preview, nothing was changed)[/yellow]"
    lines = [
        headline,
        escape(f"run {result.run_id}  snapshot {result.snapshot or '-'}  target {result.mapping or '-'}"),
    ]
    if result.compensated:
        lines.append("partial changes were rolled back (see compensation rows)")
    console.print(Panel("\n".join(lines), title="snap2vm"))
    console.print(action_table(result))
    if result.recovered_vms:
        console.print(vm_table(result))


def write_json(result: RecoveryResult, path: str) -> Path:
    out = Path(path).expanduser()
    U.ensure_dir(out.parent)
    out.write_text(U.json_dump(result.to_dict()) + "\n", encoding="utf-8")
    return out
