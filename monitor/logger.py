"""
Logging setup with three outputs:
  - stderr: colored console lines tagged with the emitting component
  - file (always): verbose debug log at logs/run_YYYYMMDD_HHMMSS.log
  - file (optional): one JSON object per line (ndjson)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_RED = "\033[31m"
_YELLOW = "\033[33m"
_CYAN = "\033[36m"
_WHITE = "\033[37m"

_LEVEL_STYLES = {
    "DEBUG": (_DIM, "DBG"),
    "INFO": (_CYAN, "INF"),
    "WARNING": (_YELLOW, "WRN"),
    "ERROR": (_RED, "ERR"),
    "CRITICAL": (_RED + _BOLD, "CRT"),
}

# Console tag per module logger; anything else shows its last dotted segment.
_COMPONENT_TAGS = {
    "client.ws": "feed",
    "client.gamma": "gamma",
    "client.clob": "clob",
    "client.cache": "cache",
    "scanner.discovery": "catalog",
    "scanner.price_window": "feed",
    "executor.engine": "exec",
    "executor.risk": "risk",
    "executor.exits": "exits",
    "pipeline.orchestrator": "trader",
    "monitor.pnl": "pnl",
}

_NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "py_clob_client", "asyncio")

DEFAULT_LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "logs")


def component_tag(logger_name: str) -> str:
    return _COMPONENT_TAGS.get(logger_name, logger_name.rsplit(".", 1)[-1])


class ConsoleFormatter(logging.Formatter):
    """Human-readable lines: time, level, component, message."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self._use_color = use_color and _supports_color()

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%H:%M:%S", time.localtime(record.created))
        color, tag = _LEVEL_STYLES.get(record.levelname, (_WHITE, "???"))
        component = f"{component_tag(record.name):<8}"
        msg = record.getMessage()

        if self._use_color:
            line = f"{_DIM}{ts}{_RESET} {color}{tag}{_RESET} {_DIM}{component}{_RESET} {msg}"
        else:
            line = f"{ts} {tag} {component} {msg}"

        if record.exc_info and record.exc_info[1]:
            exc_line = f"\n     {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
            line += f"{_RED}{exc_line}{_RESET}" if self._use_color else exc_line

        return line


class JSONFormatter(logging.Formatter):
    """Single-line JSON for machine consumption."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "component": component_tag(record.name),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = f"{type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return json.dumps(entry, separators=(",", ":"))


def setup_logging(
    level: str = "INFO",
    json_log_file: str | None = None,
    log_dir: str = DEFAULT_LOG_DIR,
) -> str:
    """
    Configure the root logger. Console respects `level`; the verbose file
    always captures DEBUG. Returns the verbose log path.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    log_path = os.path.join(log_dir, f"run_{timestamp}.log")

    verbose_handler = logging.FileHandler(log_path, mode="a")
    verbose_handler.setLevel(logging.DEBUG)
    verbose_handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)-8s %(name)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root.addHandler(verbose_handler)

    if json_log_file:
        fh = logging.FileHandler(json_log_file, mode="a")
        fh.setFormatter(JSONFormatter())
        root.addHandler(fh)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_path


def _supports_color() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()
