"""
Central logging for nodegroup-sync.

- Console handler: INFO..CRITICAL on stderr
- Timed rotated file handler: DEBUG (logs/app.log, daily rotation, UTC)
- Per-run file handler: DEBUG (logs/YYYY-MM-DD/<action>_<run_id>.log)
- Secret redaction: masks bearer tokens, passwords and private key paths
- Records carry run_id / action / server through a LoggerAdapter
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
from typing import Optional


class MaskSecretsFilter(logging.Filter):
    """
    Redact secrets (bearer tokens, passwords, private key locations) from log records.
    """

    _patterns = [
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(password\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(\btoken\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(\bkey\s*[=:]\s*)(\S+\.pem)", re.IGNORECASE),
        re.compile(r"(-----BEGIN [A-Z ]*PRIVATE KEY-----)[\s\S]*?(-----END [A-Z ]*PRIVATE KEY-----)"),
    ]

    @classmethod
    def mask(cls, text: str) -> str:
        masked = text
        for pat in cls._patterns:
            masked = pat.sub(r"\1***REDACTED***", masked)
        return masked

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self.mask(str(v)) for k, v in record.args.items()}
            else:
                record.args = tuple(self.mask(a) if isinstance(a, str) else a for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)
        return True


class _ContextDefaults(logging.Filter):
    """Fill context fields for records that did not come through the adapter."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in ("run_id", "action", "server"):
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "run=%(run_id)s action=%(action)s server=%(server)s | %(message)s"
)


def _utc_formatter(fmt: str = _FORMAT) -> logging.Formatter:
    f = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[attr-defined]
    return f


def _level(name: str, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


def _prepare(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(_utc_formatter())
    handler.addFilter(_ContextDefaults())
    handler.addFilter(MaskSecretsFilter())
    return handler


def _reset_handlers(base: logging.Logger, base_dir: str, console_level: str, file_level: str) -> None:
    """
    Leave exactly one stderr console handler and one rotating app.log handler
    on *base* (pytest swaps stdio and cwd between tests).
    """
    desired = os.path.abspath(os.path.join(base_dir, "app.log"))
    for h in list(base.handlers):
        stale_file = isinstance(h, logging.handlers.TimedRotatingFileHandler) and \
            os.path.abspath(getattr(h, "baseFilename", "")) != desired
        if stale_file or type(h) is logging.StreamHandler:
            base.removeHandler(h)
            h.close()

    base.addHandler(_prepare(logging.StreamHandler(stream=sys.stderr), _level(console_level, logging.INFO)))

    if not any(isinstance(h, logging.handlers.TimedRotatingFileHandler) for h in base.handlers):
        os.makedirs(base_dir, exist_ok=True)
        rh = logging.handlers.TimedRotatingFileHandler(
            desired, when="midnight", backupCount=14, encoding="utf-8", utc=True, delay=False,
        )
        base.addHandler(_prepare(rh, _level(file_level, logging.DEBUG)))


def build_logger(
    *,
    name: str = "ngs",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    server: Optional[str] = None,
) -> logging.LoggerAdapter:
    """
    Configure and return a LoggerAdapter.

    - The base logger `<name>` holds console + rotating file handlers; library
      modules log under `ngs.*` and land there too.
    - A child logger `<name>.<action>.<run_id>` holds the per-run file.
    """
    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)
    _reset_handlers(base, base_dir, console_level, file_level)

    child = logging.getLogger(f"{name}.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    child.propagate = True

    if not getattr(child, "_ngs_run_configured", False):
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        dated_dir = Path(base_dir) / today
        dated_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(dated_dir / f"{action}_{run_id}.log", encoding="utf-8", delay=False)
        child.addHandler(_prepare(fh, _level(file_level, logging.DEBUG)))
        child._ngs_run_configured = True  # type: ignore[attr-defined]

    adapter = logging.LoggerAdapter(child, {"run_id": run_id, "action": action, "server": server or "-"})
    adapter.debug("Logger initialised")
    return adapter
