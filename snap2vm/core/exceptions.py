# SPDX-License-Identifier: LGPL-3.0-or-later
# snap2vm/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

REDACTED = "***REDACTED***"


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _clamp_exit_code(code: int) -> int:
    if code < 0:
        return 1
    if code > 255:
        return 255
    return code


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


_SECRET_KEY_PARTS = (
    "pass",
    "secret",
    "token",
    "apikey",
    "api_key",
    "auth",
    "cookie",
    "session",
    "bearer",
    "private",
)


def _is_secret_key(k: str) -> bool:
    ks = (k or "").lower()
    return any(p in ks for p in _SECRET_KEY_PARTS)


def redact(value: Any) -> Any:
    """Return a copy of `value` with secret-looking mapping keys masked (recursive)."""
    if isinstance(value, dict):
        return {k: (REDACTED if _is_secret_key(str(k)) else redact(v)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(redact(v) for v in value)
    return value


def _format_context_compact(ctx: Dict[str, Any]) -> str:
    safe = redact(ctx)
    return ", ".join(f"{k}={safe[k]!r}" for k in sorted(safe.keys()))


@dataclass(eq=False)
class Snap2VmError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - readable __str__ (what users see)
      - exit code clamped to 0..255
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _clamp_exit_code(_safe_int(self.code, default=1))
        self.msg = _one_line(self.msg) or self.__class__.__name__
        if self.context is None:
            self.context = {}
        super().__init__(self.msg)
        self.args = (self.msg,)

    def with_context(self, **ctx: Any) -> "Snap2VmError":
        self.context.update(ctx)
        return self

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        parts = [self.msg or self.__class__.__name__]

        if include_context and self.context:
            parts.append(f"[{_one_line(_format_context_compact(self.context))}]")

        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")

        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message()

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.msg,
            "context": redact(self.context or {}),
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(Snap2VmError):
    """
    User-facing fatal error (exit code honored by main()).
    """
    pass


class AuthError(Snap2VmError):
    """Bad or expired credential, or endpoint unreachable during login."""

    def __init__(self, msg: str = "authentication failed", **kw: Any) -> None:
        kw.setdefault("code", 10)
        super().__init__(msg=msg, **kw)


class NotFoundError(Snap2VmError):
    """Missing snapshot, host, volume or datastore."""

    def __init__(self, msg: str = "not found", **kw: Any) -> None:
        kw.setdefault("code", 11)
        super().__init__(msg=msg, **kw)


class ConflictError(Snap2VmError):
    """Name collision on clone or VM registration."""

    def __init__(self, msg: str = "name conflict", **kw: Any) -> None:
        kw.setdefault("code", 12)
        super().__init__(msg=msg, **kw)


class PresentationError(Snap2VmError):
    """Invalid host/host-group mapping target."""

    def __init__(self, msg: str = "volume presentation failed", **kw: Any) -> None:
        kw.setdefault("code", 13)
        super().__init__(msg=msg, **kw)


class MountError(Snap2VmError):
    """Datastore never appeared within the bounded rescan/resignature attempts."""

    def __init__(self, msg: str = "datastore mount failed", **kw: Any) -> None:
        kw.setdefault("code", 14)
        super().__init__(msg=msg, **kw)


class RegistrationError(Snap2VmError):
    """VMX registration rejected by the hypervisor."""

    def __init__(self, msg: str = "VM registration failed", **kw: Any) -> None:
        kw.setdefault("code", 15)
        super().__init__(msg=msg, **kw)


class ArrayError(Snap2VmError):
    """Storage array API call failed for a reason outside the taxonomy above."""
    pass


class VMwareError(Snap2VmError):
    """
    vSphere/vCenter operation failed.
    Use for pyvmomi / SDK / ESXi errors that have no narrower class.
    """
    pass


class StageError(Snap2VmError):
    """A pipeline stage aborted the run; `stage` names it, `cause` holds the original error."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        code = cause.code if isinstance(cause, Snap2VmError) else 1
        super().__init__(code=code, msg=f"{stage}: {_one_line(str(cause)) or type(cause).__name__}", cause=cause)


def wrap_fatal(msg: str, exc: Optional[BaseException] = None, code: int = 2, **context: Any) -> Fatal:
    return Fatal(code=code, msg=msg, cause=exc, context=context or None)


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: just message
    verbose=1: message + compact context (if any)
    verbose>=2: message + context + cause
    """
    if isinstance(e, Snap2VmError):
        return e.user_message(
            include_context=(verbose >= 1),
            include_cause=(verbose >= 2),
        )

    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
