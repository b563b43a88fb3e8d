# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/core/auth.py
"""
Authentication providers.

One provider is selected per endpoint when the configuration is built, and
the clients only ask it for concrete material via `resolve()`:

    ApiToken          -> array REST token (array only)
    Credential        -> username/password (array token exchange, vCenter login)
    InteractivePrompt -> asks on the terminal once, then behaves like Credential
"""

from __future__ import annotations

import getpass
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

from .exceptions import AuthError


class AuthProvider(ABC):
    kind: str = "abstract"

    @abstractmethod
    def resolve(self) -> Union["ApiToken", "Credential"]:
        """Return the concrete token/credential to present to the endpoint."""

    def describe(self) -> Dict[str, Any]:
        return {"kind": self.kind}


@dataclass(frozen=True)
class ApiToken(AuthProvider):
    token: str = field(repr=False)
    kind: str = field(default="api_token", init=False)

    def __post_init__(self) -> None:
        if not (self.token or "").strip():
            raise AuthError("API token is empty")

    def resolve(self) -> "ApiToken":
        return self


@dataclass(frozen=True)
class Credential(AuthProvider):
    username: str
    password: str = field(repr=False)
    kind: str = field(default="credential", init=False)

    def __post_init__(self) -> None:
        if not (self.username or "").strip():
            raise AuthError("username is empty")

    def resolve(self) -> "Credential":
        return self

    def describe(self) -> Dict[str, Any]:
        return {"kind": self.kind, "username": self.username}


class InteractivePrompt(AuthProvider):
    """
    Prompts for whatever is missing the first time `resolve()` is called and
    caches the answer for the rest of the run.
    """

    kind = "interactive"

    def __init__(
        self,
        label: str,
        username: Optional[str] = None,
        *,
        ask_user: Callable[[str], str] = input,
        ask_secret: Callable[[str], str] = getpass.getpass,
    ) -> None:
        self.label = label
        self.username = username
        self._ask_user = ask_user
        self._ask_secret = ask_secret
        self._resolved: Optional[Credential] = None

    def resolve(self) -> Credential:
        if self._resolved is None:
            try:
                user = self.username or self._ask_user(f"{self.label} username: ").strip()
                pwd = self._ask_secret(f"{self.label} password for {user}: ")
            except (EOFError, KeyboardInterrupt) as e:
                raise AuthError(f"{self.label}: credential prompt aborted", cause=e)
            self._resolved = Credential(user, pwd)
        return self._resolved

    def describe(self) -> Dict[str, Any]:
        return {"kind": self.kind, "username": self.username}

    def __repr__(self) -> str:
        return f"InteractivePrompt(label={self.label!r}, username={self.username!r})"
