# SPDX-License-Identifier: LGPL-3.0-or-later
from .client import ArrayClient
from .models import ArrayHost, ClonedVolume, HostGroup, HostMapping, ProtectionGroup, Snapshot, VolumeSnapshot

__all__ = [
    "ArrayClient",
    "ArrayHost",
    "ClonedVolume",
    "HostGroup",
    "HostMapping",
    "ProtectionGroup",
    "Snapshot",
    "VolumeSnapshot",
]
