# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/core/config.py
"""
Recovery configuration.

YAML files are merged (later files win, nested mappings merged key by key),
then CLI overrides are applied, then `RecoveryConfig.from_mapping` validates
everything and selects one AuthProvider per endpoint.

Example file:

    array:
      endpoint: flasharray01.example.com
      api_token_env: ARRAY_API_TOKEN
    vcenter:
      endpoint: vcenter.example.com
      username: administrator@vsphere.local
      password_env: VC_PASSWORD
    protection_group: PG-Veeam
    target_host: esxi01
    vm_prefix: DR-
    power_on: true
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import yaml

from .auth import ApiToken, AuthProvider, Credential, InteractivePrompt
from .exceptions import Fatal, wrap_fatal

DEFAULT_ARRAY_API_VERSION = "2.17"


def _deep_merge(base: Dict[str, Any], over: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in over.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), Mapping):
            out[k] = _deep_merge(dict(out[k]), v)
        else:
            out[k] = v
    return out


def load_config_files(logger: logging.Logger, paths: Sequence[str]) -> Dict[str, Any]:
    """Load and merge YAML config files in order; missing or malformed files are fatal."""
    merged: Dict[str, Any] = {}
    for raw in paths:
        p = Path(raw).expanduser()
        if not p.is_file():
            raise wrap_fatal(f"Config file not found: {p}", path=str(p))
        try:
            data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise wrap_fatal(f"Invalid YAML in {p}: {e}", e, path=str(p))
        if not isinstance(data, Mapping):
            raise wrap_fatal(f"Config root must be a mapping: {p}", path=str(p))
        logger.debug("Loaded config %s (%d keys)", p, len(data))
        merged = _deep_merge(merged, data)
    return merged


def apply_overrides(conf: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Apply CLI overrides. Keys may be dotted ("array.endpoint"); None values are ignored
    so unset flags never clobber file values.
    """
    out = dict(conf)
    for key, value in overrides.items():
        if value is None:
            continue
        node = out
        parts = key.split(".")
        for part in parts[:-1]:
            child = node.get(part)
            child = dict(child) if isinstance(child, Mapping) else {}
            node[part] = child
            node = child
        node[parts[-1]] = value
    return out


def _env_or_value(section: Mapping[str, Any], key: str, env: Mapping[str, str]) -> Optional[str]:
    direct = section.get(key)
    if direct not in (None, ""):
        return str(direct)
    env_name = section.get(f"{key}_env")
    if env_name:
        val = env.get(str(env_name))
        if val in (None, ""):
            raise wrap_fatal(f"Environment variable {env_name} (for {key}) is not set")
        return val
    return None


def build_auth(
    section: Mapping[str, Any],
    label: str,
    *,
    env: Mapping[str, str],
    allow_token: bool,
) -> AuthProvider:
    """Select the auth provider for one endpoint section."""
    if allow_token:
        token = _env_or_value(section, "api_token", env)
        if token:
            return ApiToken(token)
    elif section.get("api_token") or section.get("api_token_env"):
        raise wrap_fatal(f"{label}: API tokens are not supported, use username/password")

    username = section.get("username")
    password = _env_or_value(section, "password", env)
    if username and password is not None:
        return Credential(str(username), password)
    if section.get("interactive") or username:
        return InteractivePrompt(label, username=str(username) if username else None)
    raise wrap_fatal(f"{label}: no credentials configured (api_token, username/password or interactive)")


@dataclass
class EndpointConfig:
    endpoint: str
    auth: AuthProvider = field(repr=False)
    port: int = 443
    insecure: bool = False
    timeout: Optional[float] = 60.0

    @classmethod
    def from_section(cls, section: Mapping[str, Any], label: str, *, env: Mapping[str, str], allow_token: bool) -> "EndpointConfig":
        endpoint = str(section.get("endpoint") or "").strip()
        if not endpoint:
            raise wrap_fatal(f"{label}: endpoint is required")
        timeout = section.get("timeout", 60.0)
        return cls(
            endpoint=endpoint,
            auth=build_auth(section, label, env=env, allow_token=allow_token),
            port=int(section.get("port") or 443),
            insecure=bool(section.get("insecure", False)),
            timeout=float(timeout) if timeout is not None else None,
        )


@dataclass
class RecoveryConfig:
    """
    Everything one recovery run needs. Built once; read-only afterwards.
    """

    array: EndpointConfig
    vcenter: EndpointConfig
    target_host: str

    # Snapshot selection (None = interactive choice / most recent)
    protection_group: Optional[str] = None
    snapshot: Optional[str] = None

    # Manual presentation target when initiator inference finds nothing
    array_host_group: Optional[str] = None
    array_host: Optional[str] = None

    # Naming
    clone_prefix: str = "dr-"
    vm_prefix: str = "DR-"
    datastore_prefix: Optional[str] = None

    # Placement
    folder: Optional[str] = None
    resource_pool: Optional[str] = None
    port_group: Optional[str] = None
    vm_include: Tuple[str, ...] = ()

    # Behavior
    power_on: bool = False
    cleanup_on_failure: bool = True
    eradicate_on_cleanup: bool = True
    skip_rescan: bool = False
    preview: bool = False
    answer_copied_prompt: bool = True

    # Bounded polling
    mount_attempts: int = 5
    mount_delay_s: float = 10.0
    task_poll_attempts: int = 120
    task_poll_delay_s: float = 2.0

    # Array REST + device identity
    array_api_version: str = DEFAULT_ARRAY_API_VERSION
    naa_vendor_prefix: str = "624a9370"

    report_json: Optional[str] = None

    @classmethod
    def from_mapping(cls, conf: Mapping[str, Any], *, env: Optional[Mapping[str, str]] = None) -> "RecoveryConfig":
        env = os.environ if env is None else env
        array_sec = conf.get("array") or {}
        vc_sec = conf.get("vcenter") or {}
        if not isinstance(array_sec, Mapping) or not isinstance(vc_sec, Mapping):
            raise wrap_fatal("'array' and 'vcenter' must be mappings")

        target_host = str(conf.get("target_host") or "").strip()
        if not target_host:
            raise wrap_fatal("target_host is required")

        include = conf.get("vm_include") or ()
        if isinstance(include, str):
            include = (include,)

        def _opt(key: str) -> Optional[str]:
            v = conf.get(key)
            return None if v in (None, "") else str(v)

        try:
            cfg = cls(
                array=EndpointConfig.from_section(array_sec, "array", env=env, allow_token=True),
                vcenter=EndpointConfig.from_section(vc_sec, "vcenter", env=env, allow_token=False),
                target_host=target_host,
                protection_group=_opt("protection_group"),
                snapshot=_opt("snapshot"),
                array_host_group=_opt("array_host_group"),
                array_host=_opt("array_host"),
                clone_prefix=str(conf.get("clone_prefix", "dr-") or ""),
                vm_prefix=str(conf.get("vm_prefix", "DR-") or ""),
                datastore_prefix=_opt("datastore_prefix"),
                folder=_opt("folder"),
                resource_pool=_opt("resource_pool"),
                port_group=_opt("port_group"),
                vm_include=tuple(str(x) for x in include),
                power_on=bool(conf.get("power_on", False)),
                cleanup_on_failure=bool(conf.get("cleanup_on_failure", True)),
                eradicate_on_cleanup=bool(conf.get("eradicate_on_cleanup", True)),
                skip_rescan=bool(conf.get("skip_rescan", False)),
                preview=bool(conf.get("preview", False)),
                answer_copied_prompt=bool(conf.get("answer_copied_prompt", True)),
                mount_attempts=int(conf.get("mount_attempts", 5)),
                mount_delay_s=float(conf.get("mount_delay_s", 10.0)),
                task_poll_attempts=int(conf.get("task_poll_attempts", 120)),
                task_poll_delay_s=float(conf.get("task_poll_delay_s", 2.0)),
                array_api_version=str(conf.get("array_api_version") or DEFAULT_ARRAY_API_VERSION),
                naa_vendor_prefix=str(conf.get("naa_vendor_prefix") or "624a9370").lower(),
                report_json=_opt("report_json"),
            )
        except Fatal:
            raise
        except (TypeError, ValueError) as e:
            raise wrap_fatal(f"Invalid configuration value: {e}", e)

        if cfg.array_host_group and cfg.array_host:
            raise wrap_fatal("array_host_group and array_host are mutually exclusive")
        if cfg.mount_attempts < 1:
            raise wrap_fatal("mount_attempts must be >= 1")
        return cfg

    def summary(self) -> Dict[str, Any]:
        """Loggable view of the config (auth material reduced to its kind)."""
        d = asdict(self)
        d["array"]["auth"] = self.array.auth.describe()
        d["vcenter"]["auth"] = self.vcenter.auth.describe()
        return d
