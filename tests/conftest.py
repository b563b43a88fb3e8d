# SPDX-License-Identifier: LGPL-3.0-or-later
import os
import sys
from pathlib import Path

_THIS_DIR = Path(__file__).resolve().parent
_REPO_ROOT = _THIS_DIR.parent

for _p in (_REPO_ROOT, _THIS_DIR):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

os.environ.setdefault("PYTHONPATH", str(_REPO_ROOT))


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests with no external systems")
    config.addinivalue_line("markers", "security: secret handling and redaction")
