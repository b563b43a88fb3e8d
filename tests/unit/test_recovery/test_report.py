# SPDX-License-Identifier: LGPL-3.0-or-later
import datetime as _dt
import io
import json

from rich.console import Console

from snap2vm.recovery.ledger import ActionLedger
from snap2vm.recovery.models import ActionKind, ActionStatus, RecoveredVM, RecoveryResult, VmStatus
from snap2vm.recovery.report import render_summary, write_json

T0 = _dt.datetime(2026, 2, 15, 3, 0, 5, tzinfo=_dt.timezone.utc)


def _result(**kw):
    ledger = ActionLedger(clock=lambda: T0)
    ledger.record(ActionKind.CLONE, "dr-vol-sql01", ActionStatus.SUCCESS, "from PG-Veeam.snap.vol-sql01")
    ledger.record(ActionKind.REGISTER, "DR-sql01", ActionStatus.FAILED, "vmx rejected")
    ledger.record(ActionKind.COMPENSATE, "dr-vol-sql01", ActionStatus.SUCCESS, "undo Clone Volume: destroyed", compensates=1)
    vm = RecoveredVM(
        name="DR-sql01",
        original_name="sql01",
        vmx_path="[snap-1] sql01/sql01.vmx",
        datastore="snap-1",
        status=VmStatus.FAILED,
        vcpu=4,
        memory_mb=16384,
    )
    base = dict(
        run_id="20260215-030000",
        succeeded=False,
        recovered_vms=[vm],
        actions=ledger.records,
        failed_stage="register VMs",
        error="vmx rejected",
        compensated=True,
        protection_group="PG-Veeam",
        snapshot="PG-Veeam.snap",
        mapping="host group DR-Cluster",
    )
    base.update(kw)
    return RecoveryResult(**base)


def _render(result):
    buf = io.StringIO()
    render_summary(result, Console(file=buf, width=200, color_system=None))
    return buf.getvalue()


def test_write_json_row_contract(tmp_path):
    out = write_json(_result(), str(tmp_path / "reports" / "run.json"))

    doc = json.loads(out.read_text(encoding="utf-8"))
    assert doc["run_id"] == "20260215-030000"
    assert doc["failed_stage"] == "register VMs"
    assert [a["action"] for a in doc["actions"]] == ["Clone Volume", "Register VM", "Compensate"]
    assert doc["actions"][2]["compensates"] == 1
    assert doc["actions"][0]["timestamp"] == "2026-02-15T03:00:05+00:00"
    assert doc["recovered_vms"][0] == {
        "name": "DR-sql01",
        "original_name": "sql01",
        "vmx_path": "[snap-1] sql01/sql01.vmx",
        "vcpu": 4,
        "memory_mb": 16384,
        "disk_count": None,
        "network": "",
        "power_state": "unknown",
        "status": "Failed",
        "detail": "",
    }


def test_render_failed_run():
    text = _render(_result())

    assert "Recovery failed" in text
    assert "register VMs" in text
    assert "rolled back" in text
    assert "undo #1" in text
    assert "DR-sql01" in text


def test_render_preview_run():
    text = _render(_result(succeeded=True, preview=True, failed_stage=None, error=None, compensated=False, recovered_vms=[]))

    assert "Recovery succeeded" in text
    assert "preview" in text
    assert "Recovered VMs" not in text


def test_datastore_paths_are_not_markup():
    text = _render(_result())

    assert "[snap-1] sql01/sql01.vmx" in text


def test_detail_with_closing_tag_renders():
    ledger = ActionLedger(clock=lambda: T0)
    ledger.record(ActionKind.REGISTER, "DR-sql01", ActionStatus.FAILED, "bad path [/vmfs/volumes/x]")

    text = _render(_result(actions=ledger.records, error="bad path [/vmfs/volumes/x]"))

    assert "bad path [/vmfs/volumes/x]" in text
