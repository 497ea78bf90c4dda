"""
Logging setup shared by the API, the CLI and the library loggers.

Library modules log through `logging.getLogger("privacypay.<area>")` with a
NullHandler; the entry points call `configure_logging()` once.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from privacypay import config

_CONFIGURED = False


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj)


def configure_logging(level: Optional[str] = None, structured: Optional[bool] = None) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    handler = logging.StreamHandler(sys.stderr)
    if structured if structured is not None else config.LOG_JSON:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root = logging.getLogger("privacypay")
    root.addHandler(handler)
    root.setLevel((level or config.LOG_LEVEL).upper())
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the `privacypay` namespace.

    Args:
        name: short area name, e.g. "health" or "rpc_proxy"

    Returns:
        Logger instance
    """
    if not name.startswith("privacypay"):
        name = f"privacypay.{name}"
    return logging.getLogger(name)
