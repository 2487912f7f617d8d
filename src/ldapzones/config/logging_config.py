from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

_LEVEL_TAGS = {
    logging.DEBUG: "[debug]",
    logging.INFO: "[info]",
    logging.WARNING: "[warn]",
    logging.ERROR: "[error]",
    logging.CRITICAL: "[crit]",
}

DEFAULT_FORMAT = "%(asctime)s %(level_tag)s %(name)s: %(message)s"


def level_tag(levelno: int) -> str:
    return _LEVEL_TAGS.get(levelno, f"[lvl{levelno}]")


def parse_level(value: object, default: int = logging.INFO) -> int:
    """Brief: Map a level name ("debug", "warn", ...) to a logging constant.

    Example:
      >>> parse_level("WARN") == logging.WARNING
      True
      >>> parse_level("bogus") == logging.INFO
      True
    """
    return LEVELS.get(str(value or "").strip().lower(), default)


class SyslogFormatter(logging.Formatter):
    """Formatter for syslog output; no timestamp since syslog adds its own."""

    def __init__(self, tag: Optional[str] = None) -> None:
        super().__init__()
        self.tag = tag

    def format(self, record):
        record.level_tag = level_tag(record.levelno)
        text = f"{record.level_tag} {record.name}: {record.getMessage()}"
        if self.tag:
            return f"{self.tag}: {text}"
        return text


class BracketLevelFormatter(logging.Formatter):
    """Formatter with bracketed lowercase level tags and UTC ISO-8601 timestamps."""

    def formatTime(self, record, datefmt=None):
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return stamp.strftime(datefmt or "%Y-%m-%dT%H:%M:%SZ")

    def format(self, record):
        record.level_tag = level_tag(record.levelno)
        return super().format(record)


def _syslog_handler(syslog_cfg: Any) -> logging.Handler:
    if isinstance(syslog_cfg, Mapping):
        address = syslog_cfg.get("address", "/dev/log")
        if isinstance(address, (list, tuple)):
            address = (str(address[0]), int(address[1]))
        facility = getattr(
            logging.handlers.SysLogHandler,
            f"LOG_{str(syslog_cfg.get('facility', 'USER')).upper()}",
            logging.handlers.SysLogHandler.LOG_USER,
        )
        tag = syslog_cfg.get("tag", "ldapzones")
    else:
        address = "/dev/log"
        facility = logging.handlers.SysLogHandler.LOG_USER
        tag = "ldapzones"

    handler = logging.handlers.SysLogHandler(address=address, facility=facility)
    handler.setFormatter(SyslogFormatter(tag=tag))
    return handler


def build_handlers(cfg: Optional[Mapping[str, Any]]) -> List[logging.Handler]:
    """
    Build the handlers described by a logging config block.

    Inputs:
      - cfg: mapping with optional keys stderr (default True), file (path)
        and syslog (True or {address, facility, tag}).

    Outputs:
      - list of configured handlers. A syslog endpoint that cannot be opened
        is reported on stderr and skipped.
    """
    cfg = cfg or {}
    formatter = BracketLevelFormatter(fmt=DEFAULT_FORMAT)
    handlers: List[logging.Handler] = []

    if cfg.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        handlers.append(stderr_handler)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    syslog_cfg = cfg.get("syslog")
    if syslog_cfg:
        try:
            handlers.append(_syslog_handler(syslog_cfg))
        except (OSError, ValueError) as e:  # pragma: no cover - environment-specific
            sys.stderr.write(f"Failed to configure syslog: {e}\n")

    return handlers


def init_logging(cfg: Optional[Dict[str, Any]]) -> None:
    """
    Configure the root logger from the "logging" section of the config file.

    Args:
        cfg: mapping with optional keys:
            - level: debug, info, warn, error, crit (default: info)
            - stderr: log to stderr (default: True)
            - file: path of a log file
            - syslog: True, or {"address": ..., "facility": ..., "tag": ...}

    Example config:
        {"level": "debug", "stderr": True, "file": "./ldapzones.log"}
    """
    cfg = cfg or {}

    root = logging.getLogger()
    root.setLevel(parse_level(cfg.get("level", "info")))

    for h in list(root.handlers):
        root.removeHandler(h)
    for h in build_handlers(cfg):
        root.addHandler(h)

    logging.captureWarnings(True)
