# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/__init__.py
"""
snap2vm - storage snapshot to vSphere VM recovery

Takes a protection-group snapshot on a FlashArray-style storage array, clones
its volumes, presents them to an ESXi host (or host group), resignatures the
VMFS copies and registers the virtual machines found on them.

Usage as a library:

    from snap2vm import RecoveryConfig, RecoveryOrchestrator

    config = RecoveryConfig.from_mapping(yaml.safe_load(open("dr.yaml")))
    result = RecoveryOrchestrator(logger, config).execute()
    if not result.succeeded:
        print(result.failed_stage, result.error)
"""

__version__ = "0.1.0"

from .core.config import RecoveryConfig
from .recovery.models import ActionRecord, ActionStatus, RecoveredVM, RecoveryResult, VmStatus
from .recovery.orchestrator import RecoveryOrchestrator

__all__ = [
    "__version__",
    "RecoveryConfig",
    "RecoveryOrchestrator",
    "RecoveryResult",
    "RecoveredVM",
    "ActionRecord",
    "ActionStatus",
    "VmStatus",
]
