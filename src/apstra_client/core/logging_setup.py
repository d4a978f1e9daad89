"""
Central logging for apstra-client applications (CLI, scripts).

Library modules only call `logging.getLogger("apstra.<area>")`; this module
wires handlers onto the "apstra" base logger so those records show up too.

- Console handler: INFO..CRITICAL (no DEBUG)
- Timed rotated file handler: DEBUG (logs/app.log, daily rotation)
- Action-based file handler: DEBUG (logs/YYYY-MM-DD/<action>_<run_id>.log)
- Secret redaction: masks auth tokens/passwords in both msg and % args
- UTC timestamps in ISO-8601
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


class MaskSecretsFilter(logging.Filter):
    """
    Redact auth tokens and passwords from log records.
    """

    _patterns = [
        re.compile(r"(AuthToken['\"]?\s*[:=]\s*['\"]?)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(password['\"]?\s*[=:]\s*['\"]?)([^,'\"\s}]+)", re.IGNORECASE),
        re.compile(r"(\btoken['\"]?\s*[=:]\s*['\"]?)([A-Za-z0-9._-]+)", re.IGNORECASE),
    ]

    @staticmethod
    def _mask(text: str) -> str:
        masked = text
        for pat in MaskSecretsFilter._patterns:
            masked = pat.sub(r"\1***REDACTED***", masked)
        return masked

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, dict):
            record.args = {k: self._mask(str(v)) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._mask(a) if isinstance(a, str) else a for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        return True


class RunContextFilter(logging.Filter):
    """Fill run_id/action on records emitted by plain library loggers."""

    def __init__(self, run_id: str, action: str) -> None:
        super().__init__()
        self.run_id = run_id
        self.action = action

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = self.run_id
        if not hasattr(record, "action"):
            record.action = self.action
        return True


def _utc_formatter(fmt: str) -> logging.Formatter:
    f = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[attr-defined]
    return f


def _level(name: str, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


def _replace_console_handler(base: logging.Logger, handler: logging.Handler) -> None:
    """
    Keep exactly ONE StreamHandler on stderr
    (pytest may close/replace stdio between tests; also avoid duplicates).
    """
    for h in list(base.handlers):
        if type(h) is logging.StreamHandler:
            base.removeHandler(h)
            h.close()
    base.addHandler(handler)


def _ensure_app_file_handler(base: logging.Logger, desired: str, make: Any) -> None:
    """
    Ensure a single TimedRotatingFileHandler points to *desired*. A handler
    left over from a previous call with another base_dir is replaced.
    """
    for h in list(base.handlers):
        if isinstance(h, logging.handlers.TimedRotatingFileHandler):
            if os.path.abspath(h.baseFilename) != desired:
                base.removeHandler(h)
                h.close()
    if not any(
        isinstance(h, logging.handlers.TimedRotatingFileHandler)
        and os.path.abspath(h.baseFilename) == desired
        for h in base.handlers
    ):
        base.addHandler(make())


def build_logger(
    *,
    name: str = "apstra",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    extra: Optional[Dict[str, Any]] = None,
) -> logging.LoggerAdapter:
    """
    Configure and return a LoggerAdapter.

    Design:
      - A base logger `<name>` holds console + rotating file handlers. The
        library loggers (`apstra.http`, `apstra.tasks`) are its children.
      - A child logger `<name>.<action>.<run_id>` holds a per-run file handler.
      - Records propagate to the base logger so they appear in all sinks.
    """
    mask = MaskSecretsFilter()
    context = RunContextFilter(run_id, action)
    formatter = _utc_formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | run=%(run_id)s action=%(action)s | %(message)s"
    )

    def configure(h: logging.Handler, level: int) -> logging.Handler:
        h.setLevel(level)
        h.setFormatter(formatter)
        h.addFilter(context)
        h.addFilter(mask)
        return h

    os.makedirs(base_dir, exist_ok=True)

    # --- Base logger with console + rotating file ---
    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)

    _replace_console_handler(
        base, configure(logging.StreamHandler(stream=sys.stderr), _level(console_level, logging.INFO))
    )

    app_log = os.path.abspath(os.path.join(base_dir, "app.log"))
    _ensure_app_file_handler(
        base,
        app_log,
        lambda: configure(
            logging.handlers.TimedRotatingFileHandler(
                app_log, when="midnight", backupCount=14, encoding="utf-8", utc=True, delay=False,
            ),
            _level(file_level, logging.DEBUG),
        ),
    )

    # --- Child logger with per-run action file (configured once per action+run) ---
    child = logging.getLogger(f"{name}.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    child.propagate = True

    if not getattr(child, "_apstra_action_configured", False):
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        dated_dir = os.path.join(base_dir, today)
        os.makedirs(dated_dir, exist_ok=True)
        action_file = Path(dated_dir) / f"{action}_{run_id}.log"
        child.addHandler(configure(
            logging.FileHandler(action_file, encoding="utf-8", delay=False),
            _level(file_level, logging.DEBUG),
        ))
        child._apstra_action_configured = True  # type: ignore[attr-defined]

    adapter = logging.LoggerAdapter(child, {"run_id": run_id, "action": action, **(extra or {})})
    adapter.debug("Logger initialised")
    return adapter
