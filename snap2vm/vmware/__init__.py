# SPDX-License-Identifier: LGPL-3.0-or-later
from .client import VSphereClient
from .models import Datastore, HostInitiators, VmSummary

__all__ = ["VSphereClient", "Datastore", "HostInitiators", "VmSummary"]
