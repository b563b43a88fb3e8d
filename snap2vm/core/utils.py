# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/core/utils.py
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional

_ARRAY_NAME_RE = re.compile(r"[^A-Za-z0-9-]+")


class U:
    @staticmethod
    def ensure_dir(p: Path) -> None:
        p.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def json_dump(obj: Any) -> str:
        try:
            return json.dumps(obj, indent=2, sort_keys=True, default=str)
        except Exception:
            return repr(obj)

    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        x = float(n)
        for unit in ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]:
            if x < 1024 or unit == "PiB":
                return f"{x:.2f} {unit}" if unit != "B" else f"{int(x)} {unit}"
            x /= 1024
        return f"{n} B"

    @staticmethod
    def array_safe_name(name: str, *, max_len: int = 63) -> str:
        """
        Array object names allow letters, digits and '-' only, must start with a
        letter or digit, and are limited to 63 characters.
        """
        s = _ARRAY_NAME_RE.sub("-", (name or "").strip()).strip("-")
        s = re.sub(r"-{2,}", "-", s)
        return (s or "vol")[:max_len].rstrip("-")
