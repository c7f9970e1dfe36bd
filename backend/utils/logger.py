import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from utils.utcnow import utcnow

# Third-party loggers that flood INFO with per-request and per-frame noise.
QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "asyncio", "aiosqlite", "sqlalchemy.engine")


def _fields(record: logging.LogRecord) -> dict[str, Any]:
    return getattr(record, "fields", None) or {}


class JSONFormatter(logging.Formatter):
    """One JSON object per line; keyword fields land under ``data``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": utcnow().isoformat() + "Z",
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        fields = _fields(record)
        if fields:
            entry["data"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Console format for local runs: ``... message | key=value key=value``."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        # Fields stay on the message line, ahead of any traceback.
        line = super().formatMessage(record)
        fields = _fields(record)
        if fields:
            line = f"{line} | " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


class ContextLogger:
    """Thin wrapper so call sites pass structured fields as keywords.

    ``logger.info("Trade opened", agent_id="a", price=0.55)``
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, exc_info: Any = None, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        # stacklevel 3 reports the caller of debug()/info()/..., not this wrapper.
        self.logger.log(level, msg, exc_info=exc_info, stacklevel=3, extra={"fields": fields})

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, **fields)


def setup_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None):
    """Route every engine logger to stdout, and optionally to a JSON log file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers = []

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(
        JSONFormatter() if json_format else TextFormatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(name)
