# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# snap2vm/cli/args.py
from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, Optional, Sequence, Tuple

from ..core.config import apply_overrides, load_config_files
from ..core.logger import Log, c
from ..core.utils import U

YAML_EXAMPLE = """\
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
  port_group: DR-Network
  power_on: true
"""

# CLI dest -> dotted config key. Flags left unset (None) never override the YAML.
_OVERRIDES = {
    "array_endpoint": "array.endpoint",
    "array_user": "array.username",
    "array_token_env": "array.api_token_env",
    "vcenter_endpoint": "vcenter.endpoint",
    "vcenter_user": "vcenter.username",
    "vcenter_password_env": "vcenter.password_env",
    "protection_group": "protection_group",
    "snapshot": "snapshot",
    "target_host": "target_host",
    "array_host_group": "array_host_group",
    "array_host": "array_host",
    "clone_prefix": "clone_prefix",
    "vm_prefix": "vm_prefix",
    "datastore_prefix": "datastore_prefix",
    "folder": "folder",
    "resource_pool": "resource_pool",
    "port_group": "port_group",
    "vm_include": "vm_include",
    "power_on": "power_on",
    "cleanup_on_failure": "cleanup_on_failure",
    "eradicate_on_cleanup": "eradicate_on_cleanup",
    "skip_rescan": "skip_rescan",
    "preview": "preview",
    "answer_copied_prompt": "answer_copied_prompt",
    "mount_attempts": "mount_attempts",
    "mount_delay_s": "mount_delay_s",
    "report_json": "report_json",
}


class HelpFormatter(argparse.RawDescriptionHelpFormatter, argparse.ArgumentDefaultsHelpFormatter):
    """Raw epilog plus default values in help."""


def _add_global(p: argparse.ArgumentParser) -> None:
    from .. import __version__

    p.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML config file (repeatable; later overrides earlier).",
    )
    p.add_argument("--dump-config", action="store_true", help="Print the merged config (secrets redacted) and exit.")
    p.add_argument("--version", action="version", version=__version__)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -vv debug, -vvv trace.")
    p.add_argument("-q", "--quiet", action="count", default=0, help="Less output: -q warnings, -qq errors.")
    p.add_argument("--log-file", dest="log_file", default=None, help="Also write logs to this file.")
    p.add_argument("--json-logs", dest="json_logs", action="store_true", help="Emit logs as NDJSON.")
    p.add_argument("--no-color", dest="no_color", action="store_true", help="Disable colored console logs.")


def _add_endpoints(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Endpoints")
    g.add_argument("--array", dest="array_endpoint", default=None, help="Array management address.")
    g.add_argument("--array-user", dest="array_user", default=None, help="Array username (prompted for password).")
    g.add_argument("--array-token-env", dest="array_token_env", default=None, help="Env var holding the array API token.")
    g.add_argument("--vcenter", dest="vcenter_endpoint", default=None, help="vCenter address.")
    g.add_argument("--vcenter-user", dest="vcenter_user", default=None, help="vCenter username.")
    g.add_argument("--vcenter-password-env", dest="vcenter_password_env", default=None, help="Env var holding the vCenter password.")


def _add_selection(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Snapshot and target")
    g.add_argument("--protection-group", dest="protection_group", default=None, help="Protection group to recover from.")
    g.add_argument("--snapshot", default=None, help="Snapshot name or suffix (default: most recent).")
    g.add_argument("--target-host", dest="target_host", default=None, help="ESXi host that mounts the datastores.")
    g.add_argument("--array-host-group", dest="array_host_group", default=None, help="Present to this array host group (skips inference).")
    g.add_argument("--array-host", dest="array_host", default=None, help="Present to this single array host (skips inference).")
    g.add_argument("--interactive", action="store_true", help="Prompt for protection group / host group when not configured.")


def _add_naming(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Naming and placement")
    g.add_argument("--clone-prefix", dest="clone_prefix", default=None, help="Prefix for cloned volume names.")
    g.add_argument("--vm-prefix", dest="vm_prefix", default=None, help="Prefix for registered VM names.")
    g.add_argument("--datastore-prefix", dest="datastore_prefix", default=None, help="Rename resignatured datastores to <prefix><clone>.")
    g.add_argument("--folder", default=None, help="VM folder for registered VMs.")
    g.add_argument("--resource-pool", dest="resource_pool", default=None, help="Resource pool for registered VMs.")
    g.add_argument("--port-group", dest="port_group", default=None, help="Attach every NIC to this port group.")
    g.add_argument(
        "--vm-include",
        dest="vm_include",
        action="append",
        default=None,
        help="Only register VMX files matching this glob (repeatable).",
    )


def _add_behavior(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Behavior")
    g.add_argument("--preview", action="store_const", const=True, default=None, help="Record what would happen; change nothing.")
    g.add_argument("--power-on", dest="power_on", action="store_const", const=True, default=None, help="Power on registered VMs.")
    g.add_argument(
        "--no-cleanup",
        dest="cleanup_on_failure",
        action="store_const",
        const=False,
        default=None,
        help="On failure, leave partial artifacts for inspection.",
    )
    g.add_argument(
        "--no-eradicate",
        dest="eradicate_on_cleanup",
        action="store_const",
        const=False,
        default=None,
        help="On cleanup, destroy clones without eradicating them.",
    )
    g.add_argument("--skip-rescan", dest="skip_rescan", action="store_const", const=True, default=None, help="Do not rescan HBAs before mounting.")
    g.add_argument(
        "--no-answer-prompt",
        dest="answer_copied_prompt",
        action="store_const",
        const=False,
        default=None,
        help="Do not answer the copied-VM identity question.",
    )
    g.add_argument("--mount-attempts", dest="mount_attempts", type=int, default=None, help="Rescan/resignature attempts per datastore.")
    g.add_argument("--mount-delay", dest="mount_delay_s", type=float, default=None, help="Seconds between mount attempts.")
    g.add_argument("--report-json", dest="report_json", default=None, help="Write the run result as JSON to this path.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="snap2vm",
        description=c("snap2vm: recover VMs from a storage array snapshot", "green", ["bold"]),
        formatter_class=HelpFormatter,
        epilog=c("YAML example:\n", "cyan", ["bold"]) + c(YAML_EXAMPLE, "cyan"),
    )
    _add_global(p)
    _add_endpoints(p)
    _add_selection(p)
    _add_naming(p)
    _add_behavior(p)
    return p


def _build_preparser() -> argparse.ArgumentParser:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", action="append", default=[])
    pre.add_argument("-v", "--verbose", action="count", default=0)
    pre.add_argument("-q", "--quiet", action="count", default=0)
    pre.add_argument("--log-file", dest="log_file", default=None)
    pre.add_argument("--json-logs", dest="json_logs", action="store_true")
    pre.add_argument("--no-color", dest="no_color", action="store_true")
    return pre


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    return {key: getattr(args, dest, None) for dest, key in _OVERRIDES.items()}


def parse_args_with_config(
    argv: Optional[Sequence[str]] = None,
    logger: Any = None,
) -> Tuple[argparse.Namespace, Dict[str, Any], Any]:
    """
    Phase 0: parse only what locates config and logging
    Phase 1: load and merge YAML files
    Phase 2: full parse; set flags override the merged YAML
    """
    argv = list(sys.argv[1:] if argv is None else argv)

    pre = _build_preparser()
    args0, _rest = pre.parse_known_args(argv)
    if logger is None:
        logger = Log.setup(
            args0.verbose,
            args0.log_file,
            quiet=args0.quiet,
            color=not args0.no_color,
            json_logs=args0.json_logs,
        )

    args = build_parser().parse_args(argv)
    conf = load_config_files(logger, args.config)
    conf = apply_overrides(conf, overrides_from_args(args))

    if args.dump_config:
        from ..core.exceptions import redact

        print(U.json_dump(redact(conf)))
        raise SystemExit(0)

    return args, conf, logger
