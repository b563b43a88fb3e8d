# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
from __future__ import annotations

import sys
import traceback
from typing import Any, Optional, Sequence

from rich.prompt import Prompt

from .cli.args import parse_args_with_config
from .core.config import RecoveryConfig
from .core.exceptions import Fatal, format_exception_for_cli
from .core.logger import Log
from .recovery.orchestrator import RecoveryOrchestrator
from .recovery.report import render_summary, write_json

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def _print_stderr(msg: str) -> None:
    print(msg, file=sys.stderr)


def prompt_chooser(title: str, options: Sequence[str]) -> Optional[str]:
    """Interactive pick from `options`; returns None when stdin is not a terminal."""
    if not sys.stdin.isatty():
        return None
    return Prompt.ask(title, choices=list(options))


def main(argv: Optional[Sequence[str]] = None) -> None:
    logger: Any = None

    # Phase 1: arguments and config (exit 2 on any problem)
    try:
        args, conf, logger = parse_args_with_config(argv)
        config = RecoveryConfig.from_mapping(conf)
    except Fatal as e:
        msg = format_exception_for_cli(e, verbose=1)
        if logger is None:
            _print_stderr(f"💥 ERROR    {msg}")
        else:
            logger.error(msg)
        raise SystemExit(EXIT_USAGE)
    except KeyboardInterrupt:
        _print_stderr("Interrupted by user (Ctrl+C).")
        raise SystemExit(EXIT_INTERRUPTED)

    logger.debug("Effective config: %s", config.summary())
    log = Log.bind(logger, host=config.target_host, preview=config.preview)

    # Phase 2: recovery run
    try:
        chooser = prompt_chooser if args.interactive else None
        result = RecoveryOrchestrator(log, config, chooser=chooser).execute()
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C); partial artifacts may remain.")
        raise SystemExit(EXIT_INTERRUPTED)
    except Exception as e:
        logger.error("💥 UNHANDLED %s: %s", type(e).__name__, e)
        logger.debug(traceback.format_exc())
        raise SystemExit(EXIT_FAILED)

    if not args.quiet:
        render_summary(result)
    if config.report_json:
        out = write_json(result, config.report_json)
        logger.info("Report written to %s", out)

    raise SystemExit(EXIT_OK if result.succeeded else EXIT_FAILED)


if __name__ == "__main__":
    main()
