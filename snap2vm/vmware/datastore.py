# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/vmware/datastore.py

"""
Datastore path and device-identity helpers (pure functions, no vSphere calls).
"""

from __future__ import annotations

import fnmatch
import re
from pathlib import PurePosixPath
from typing import Optional, Sequence, Tuple

_BACKING_RE = re.compile(r"\[(.+?)\]\s*(.*)")
_NAA_RE = re.compile(r"^naa\.([0-9a-f]+)$")


def parse_ds_path(path: str) -> Tuple[str, str]:
    """
    Parse a datastore path:
      "[datastore] path/to/file.ext" -> ("datastore", "path/to/file.ext")
    """
    m = _BACKING_RE.match((path or "").strip())
    if not m:
        raise ValueError(f"not a datastore path: {path!r}")
    return m.group(1), m.group(2).lstrip("/")


def join_ds_path(folder_path: str, file_name: str) -> str:
    """Join a browser folderPath ("[ds] vm01" or "[ds]") with a file name."""
    base = (folder_path or "").rstrip("/")
    if base.endswith("]"):
        return f"{base} {file_name}"
    return f"{base}/{file_name}"


def vm_name_from_vmx(vmx_path: str) -> str:
    """"[ds] sql01/sql01.vmx" -> "sql01"."""
    _ds, rel = parse_ds_path(vmx_path)
    return PurePosixPath(rel).stem


def naa_for_serial(serial: str, vendor_prefix: str) -> str:
    """Canonical SCSI device name the hypervisor reports for an array volume serial."""
    return f"naa.{vendor_prefix.lower()}{serial.lower()}"


def device_matches_serial(disk_name: Optional[str], serial: Optional[str], vendor_prefix: str) -> bool:
    """
    True only when `disk_name` is exactly the NAA identity of `serial`.

    Equality, not containment: a serial that happens to be a substring of some
    other device id must not match.
    """
    if not disk_name or not serial:
        return False
    m = _NAA_RE.match(disk_name.strip().lower())
    if not m:
        return False
    return m.group(1) == f"{vendor_prefix}{serial}".lower()


def under_datastore(vmx_path: str, datastore_name: str) -> bool:
    try:
        ds, _rel = parse_ds_path(vmx_path)
    except ValueError:
        return False
    return ds == datastore_name


def vmx_selected(vmx_path: str, include: Sequence[str]) -> bool:
    """True when `include` is empty or the VMX file name matches one of its globs."""
    if not include:
        return True
    try:
        _ds, rel = parse_ds_path(vmx_path)
    except ValueError:
        rel = vmx_path
    base = PurePosixPath(rel).name
    return any(fnmatch.fnmatch(base, g) for g in include)
