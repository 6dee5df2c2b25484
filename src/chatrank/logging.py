"""Two-tier structured logging for chatrank.

Console lines are short and meant for people. The debug file holds one JSON
object per line, stamped with the active project, so a run of
prioritization decisions can be filtered per project afterwards.
"""

import json
import logging
import os
import sys
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .config import Config

# Project id stamped on every debug file entry
_active_project: Optional[str] = None

LEVEL_TAGS = {
    "DEBUG": "DBG",
    "INFO": "INF",
    "WARNING": "WRN",
    "ERROR": "ERR",
    "CRITICAL": "CRT",
}


def set_active_project(project_id: Optional[str]) -> None:
    global _active_project
    _active_project = project_id


def get_active_project() -> Optional[str]:
    return _active_project


def _component(logger_name: str) -> str:
    # "chatrank.store" -> "store"
    return logger_name.rsplit(".", 1)[-1]


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Example:
    {"ts":"2026-02-04T10:15:32.123","level":"DEBUG","component":"store",
     "project":"proj-1","msg":"Appended msg_ab12 to proj-1: tier=CRITICAL","ctx":{...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "component": _component(record.name),
            "project": _active_project,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        ctx = getattr(record, "ctx", None)
        if ctx is not None:
            entry["ctx"] = ctx
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS [TAG] component: message``, coloured on a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        tag = LEVEL_TAGS.get(record.levelname, record.levelname[:3])
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{stamp} [{tag}] {_component(record.name)}: {record.getMessage()}"

        if self.use_colors:
            line = f"{self.COLORS.get(record.levelname, '')}{line}{self.RESET}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def get_debug_log_path() -> Path:
    """Debug log location under ``$XDG_DATA_HOME``."""
    data_home = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return Path(data_home) / "chatrank" / "logs" / "debug.log"


def rotate_debug_log(log_path: Path) -> None:
    """Keep the previous run's log as ``debug.log.1``."""
    if log_path.exists():
        log_path.replace(log_path.with_suffix(".log.1"))


def setup_logging(config: "Config") -> None:
    """Install the console handler and, if enabled, the JSON debug file.

    Levels, colours and the debug file come from ``config.logging``. The
    first debug file entry records the full configuration.
    """
    settings = config.logging
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)  # Filter at handler level
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, settings.level.upper()))
    console.setFormatter(ConsoleFormatter(use_colors=settings.use_colors))
    root.addHandler(console)

    if settings.debug_to_file:
        log_path = get_debug_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotate_debug_log(log_path)

        file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("chatrank").info(
        "=== chatrank session started ===",
        extra={"ctx": {"session_start": datetime.now().isoformat(), "config": asdict(config)}},
    )


def get_filtered_logs(
    component: Optional[str] = None,
    level: Optional[str] = None,
    project: Optional[str] = None,
    lines: int = 100,
) -> str:
    """Last ``lines`` debug log entries matching every given filter.

    Args:
        component: Logger suffix, e.g. "store" or "resolution"
        level: Level name, e.g. "WARNING"
        project: Active project id at the time of the entry
        lines: Maximum entries to return

    Returns:
        Matching raw log lines, or a notice if there is no log yet.
    """
    log_path = get_debug_log_path()
    if not log_path.exists():
        return "No debug log found."

    wanted = {
        key: value
        for key, value in (("component", component), ("level", level), ("project", project))
        if value
    }
    results = []
    with open(log_path, "r", encoding="utf-8") as f:
        for line in f:
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if all(entry.get(key) == value for key, value in wanted.items()):
                results.append(line)

    return "".join(results[-lines:])
