# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/array/client.py
"""
REST client for a FlashArray-style storage control plane.

Only the operations the recovery pipeline needs: snapshot discovery, volume
cloning, host/host-group presentation and volume teardown. Reads are retried
on transient transport errors; writes are never retried (a retried clone could
race its own first attempt).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests
import requests.adapters
import urllib3

from ..core.auth import ApiToken, AuthProvider, Credential
from ..core.exceptions import ArrayError, AuthError, ConflictError, NotFoundError, PresentationError
from ..core.logger import Log
from ..core.retry import retry_operation
from .models import ArrayHost, ClonedVolume, HostGroup, HostMapping, ProtectionGroup, Snapshot, VolumeSnapshot

# Username/password -> API token exchange lives on the legacy 1.x API.
_TOKEN_EXCHANGE_PATH = "/api/1.19/auth/apitoken"

_TRANSIENT = (requests.ConnectionError, requests.Timeout)


def _error_text(resp: Any) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "").strip()[:300] or f"HTTP {resp.status_code}"
    errors = body.get("errors") if isinstance(body, dict) else None
    if errors:
        return "; ".join(str(e.get("message") or e) for e in errors)
    if isinstance(body, list) and body:
        return "; ".join(str(e.get("msg") or e) for e in body if isinstance(e, dict))
    return f"HTTP {resp.status_code}"


class ArrayClient:
    """
    Array REST session. One client == one authenticated connection for the whole run.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        api_version: str = "2.17",
        insecure: bool = False,
        timeout: Optional[float] = 60.0,
        session: Optional[Any] = None,  # For testing/mocking
        read_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.logger = logger
        self.api_version = api_version
        self.insecure = insecure
        self.timeout = timeout
        self.read_attempts = read_attempts
        self._sleep = sleep

        self.endpoint: Optional[str] = None
        self._base: Optional[str] = None
        self._auth_token: Optional[str] = None
        self._session = session or self._create_session()

        if insecure:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.verify = not self.insecure
        adapter = requests.adapters.HTTPAdapter(pool_connections=1, pool_maxsize=4, max_retries=0)
        session.mount("https://", adapter)
        return session

    # Connection

    @property
    def connected(self) -> bool:
        return self._auth_token is not None

    def connect(self, endpoint: str, auth: AuthProvider, *, port: int = 443) -> None:
        """
        Log in with an API token (directly, or exchanged from a username/password).

        Raises AuthError on a rejected credential or an unreachable endpoint.
        """
        host = (endpoint or "").strip()
        if not host:
            raise AuthError("array endpoint is empty")
        self.endpoint = host
        self._base = f"https://{host}" if port == 443 else f"https://{host}:{port}"

        material = auth.resolve()
        try:
            if isinstance(material, Credential):
                token = self._exchange_credential(material)
            elif isinstance(material, ApiToken):
                token = material.token
            else:
                raise AuthError(f"unsupported auth provider for array: {auth.kind}")

            resp = self._session.post(
                self._url("/login"),
                headers={"api-token": token},
                timeout=self.timeout,
            )
        except _TRANSIENT as e:
            raise AuthError(f"array {host} unreachable: {e}", cause=e)

        if resp.status_code in (401, 403) or not resp.ok:
            raise AuthError(f"array login rejected by {host}: {_error_text(resp)}")
        auth_token = resp.headers.get("x-auth-token")
        if not auth_token:
            raise AuthError(f"array {host} did not return a session token")

        self._auth_token = auth_token
        self._session.headers["x-auth-token"] = auth_token
        self.logger.info("Connected to array: %s (REST %s)", host, self.api_version)

    def _exchange_credential(self, cred: Credential) -> str:
        resp = self._session.post(
            f"{self._base}{_TOKEN_EXCHANGE_PATH}",
            json={"username": cred.username, "password": cred.password},
            timeout=self.timeout,
        )
        if not resp.ok:
            raise AuthError(f"array credential rejected for {cred.username}: {_error_text(resp)}")
        token = (resp.json() or {}).get("api_token")
        if not token:
            raise AuthError(f"array returned no API token for {cred.username}")
        return str(token)

    def disconnect(self) -> None:
        if not self._auth_token:
            return
        try:
            self._session.post(self._url("/logout"), timeout=self.timeout)
        except requests.RequestException as e:
            self.logger.debug("Array logout failed (ignored): %s", e)
        finally:
            self._auth_token = None
            self._session.headers.pop("x-auth-token", None)

    # Transport

    def _url(self, path: str) -> str:
        if not self._base:
            raise ArrayError(msg="array client is not connected")
        return f"{self._base}/api/{self.api_version}{path}"

    def _check(self, resp: Any, what: str) -> Dict[str, Any]:
        if resp.status_code in (401, 403):
            raise AuthError(f"{what}: not authorized ({_error_text(resp)})")
        if resp.status_code == 404:
            raise NotFoundError(f"{what}: {_error_text(resp)}")
        if not resp.ok:
            raise ArrayError(code=20, msg=f"{what}: {_error_text(resp)}", context={"status": resp.status_code})
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"items": body}

    def _get_items(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """GET with continuation-token paging; each page is retried on transport errors."""
        items: List[Dict[str, Any]] = []
        query = dict(params or {})
        while True:
            resp = retry_operation(
                lambda: self._session.get(self._url(path), params=dict(query), timeout=self.timeout),
                max_attempts=self.read_attempts,
                exceptions=_TRANSIENT,
                operation_name=f"GET {path}",
                logger=self.logger,
                sleep=self._sleep,
            )
            body = self._check(resp, f"GET {path}")
            items.extend(body.get("items") or [])
            Log.trace(self.logger, "GET %s -> %s (%d items so far)", path, resp.status_code, len(items))
            token = body.get("continuation_token")
            if not token:
                return items
            query["continuation_token"] = token

    # Snapshot discovery

    def list_protection_groups(self) -> List[ProtectionGroup]:
        groups = [ProtectionGroup.from_api(i) for i in self._get_items("/protection-groups")]
        return sorted(groups, key=lambda g: g.name)

    def list_snapshots(self, group_name: str) -> List[Snapshot]:
        """Snapshots of one protection group, newest first (name breaks ties)."""
        items = self._get_items("/protection-group-snapshots", {"source_names": group_name})
        snaps = [Snapshot.from_api(i) for i in items]
        return sorted(snaps, key=lambda s: (s.created, s.name), reverse=True)

    def list_volume_snapshots(self, snapshot_name: str) -> List[VolumeSnapshot]:
        prefix = snapshot_name + "."
        items = self._get_items("/volume-snapshots", {"filter": f"name='{prefix}*'"})
        vols = [VolumeSnapshot.from_api(i) for i in items if str(i.get("name", "")).startswith(prefix)]
        if not vols:
            raise NotFoundError(f"snapshot {snapshot_name} has no member volumes", context={"snapshot": snapshot_name})
        return sorted(vols, key=lambda v: v.name)

    def get_volume(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            items = self._get_items("/volumes", {"names": name})
        except NotFoundError:
            return None
        return items[0] if items else None

    # Cloning

    def clone_volume(self, source: VolumeSnapshot, destination_name: str) -> ClonedVolume:
        """
        Copy a volume snapshot into a new writable volume.

        Raises ConflictError if `destination_name` already exists.
        """
        what = f"clone {source.name} -> {destination_name}"
        resp = self._session.post(
            self._url("/volumes"),
            params={"names": destination_name},
            json={"source": {"name": source.name}},
            timeout=self.timeout,
        )
        if resp.status_code == 409 or (not resp.ok and "already exists" in _error_text(resp).lower()):
            raise ConflictError(f"volume {destination_name} already exists", context={"source": source.name})
        body = self._check(resp, what)
        items = body.get("items") or []
        if not items:
            raise ArrayError(code=20, msg=f"{what}: array returned no volume")
        cloned = ClonedVolume.from_api(items[0], source)
        self.logger.debug("Cloned %s -> %s (serial=%s)", source.name, cloned.name, cloned.serial)
        return cloned

    # Hosts / presentation

    def list_hosts(self) -> List[ArrayHost]:
        """Host inventory in array order (the order topology inference relies on)."""
        return [ArrayHost.from_api(i) for i in self._get_items("/hosts")]

    def list_host_groups(self) -> List[HostGroup]:
        return sorted((HostGroup.from_api(i) for i in self._get_items("/host-groups")), key=lambda g: g.name)

    @staticmethod
    def _mapping_params(volume_name: str, mapping: HostMapping) -> Dict[str, str]:
        key = "host_group_names" if mapping.is_group else "host_names"
        return {"volume_names": volume_name, key: mapping.name}

    def connect_host_mapping(self, volume_name: str, mapping: HostMapping) -> None:
        """Present a volume to a host group or a single host; PresentationError if the target is invalid."""
        resp = self._session.post(
            self._url("/connections"),
            params=self._mapping_params(volume_name, mapping),
            timeout=self.timeout,
        )
        if resp.status_code in (401, 403):
            raise AuthError(f"connect {volume_name}: not authorized")
        if not resp.ok:
            raise PresentationError(
                f"cannot present {volume_name} to {mapping}: {_error_text(resp)}",
                context={"volume": volume_name, "target": mapping.name},
            )

    def disconnect_host_mapping(self, volume_name: str, mapping: HostMapping) -> None:
        resp = self._session.delete(
            self._url("/connections"),
            params=self._mapping_params(volume_name, mapping),
            timeout=self.timeout,
        )
        if resp.status_code in (401, 403):
            raise AuthError(f"disconnect {volume_name}: not authorized")
        if not resp.ok:
            raise PresentationError(f"cannot disconnect {volume_name} from {mapping}: {_error_text(resp)}")

    # Teardown (compensation only)

    def destroy_volume(self, name: str, eradicate: bool = True) -> bool:
        """
        Destroy (and optionally eradicate) a volume. Best-effort: returns False and logs on failure.
        """
        try:
            resp = self._session.patch(
                self._url("/volumes"),
                params={"names": name},
                json={"destroyed": True},
                timeout=self.timeout,
            )
            self._check(resp, f"destroy {name}")
            if eradicate:
                resp = self._session.delete(self._url("/volumes"), params={"names": name}, timeout=self.timeout)
                self._check(resp, f"eradicate {name}")
        except Exception as e:
            self.logger.error("Volume teardown failed for %s: %s", name, e)
            return False
        self.logger.info("Destroyed volume %s%s", name, " (eradicated)" if eradicate else "")
        return True
