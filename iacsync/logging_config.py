"""
Logging Configuration — Log output for pipeline agents and terminals.

Everything goes to stderr so stdout stays free for command output
(``state show --json``, ``##vso`` logging commands). Three formats:

- ``text``: ``12:34:56 INFO    [orchestrator   ] message``, colored on a TTY
- ``json``: one object per line with the run context fields
- ``azure``: plain lines, with warnings and errors raised as Azure DevOps
  ``##[warning]`` / ``##[error]`` annotations so they surface on the run
  summary page

## Environment Variables

- LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- LOG_FORMAT: text, json, azure (default: azure on an agent, else text)

## Usage

    from iacsync.logging_config import setup_logging

    setup_logging()  # Call once at startup

    logger.info("Applying", extra={"run_id": run_id, "env_key": ref.env_key})
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# Run context attached through ``extra=``
CONTEXT_FIELDS = ("run_id", "env_key", "artifact_id", "mirror")

FORMATS = ("text", "json", "azure")

# Libraries that log every HTTP request at INFO
NOISY_LOGGERS = ("azure", "azure.core.pipeline.policies.http_logging_policy", "urllib3")


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    {"ts": "...", "level": "...", "logger": "...", "message": "...", "run_id": "..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Short local time, padded level and the last logger name segment."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = False):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:7}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        module = record.name.rsplit(".", 1)[-1][:15]
        line = f"{stamp} {level} [{module:15}] {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class AzurePipelinesFormatter(HumanFormatter):
    """Human lines; WARNING and above become pipeline annotations."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if record.levelno >= logging.ERROR:
            return f"##[error]{line}"
        if record.levelno >= logging.WARNING:
            return f"##[warning]{line}"
        return line


def _default_format() -> str:
    return "azure" if os.environ.get("TF_BUILD") else "text"


def setup_logging(
    level: str | None = None,
    format_type: str | None = None,
) -> None:
    """
    Install a single stderr handler on the root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR; falls back to LOG_LEVEL, then INFO
        format_type: text, json or azure; falls back to LOG_FORMAT, then
            azure on an Azure DevOps agent and text elsewhere
    """
    log_level = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    log_format = (format_type or os.environ.get("LOG_FORMAT") or _default_format()).lower()
    numeric_level = getattr(logging, log_level, logging.INFO)

    formatter: logging.Formatter
    if log_format == "json":
        formatter = JSONFormatter()
    elif log_format == "azure":
        formatter = AzurePipelinesFormatter()
    else:
        formatter = HumanFormatter(color=sys.stderr.isatty())

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    logging.getLogger(__name__).debug(f"Logging configured: level={log_level}, format={log_format}")
