"""
Logging setup and helpers shared by every layer.

Log lines carry a short message plus ``key=value`` fields so that the
repository, service and HTTP layers all report in the same shape.
"""
import json
import logging
import sys
from typing import Any, Dict, Mapping, Optional

import config

SENSITIVE_FIELDS = {
    "password",
    "confirmPassword",
    "currentPassword",
    "newPassword",
    "token",
    "secret",
    "key",
    "authorization",
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root = logging.getLogger("youthguard")
    root.addHandler(handler)
    root.setLevel((level or config.LOG_LEVEL).upper())
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"youthguard.{name}")


def redact(data: Any) -> Any:
    """Return a shallow copy of ``data`` with secret-bearing fields masked."""
    if not isinstance(data, Mapping):
        return data
    sanitized = dict(data)
    for field in SENSITIVE_FIELDS:
        if sanitized.get(field):
            sanitized[field] = "[REDACTED]"
    return sanitized


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return repr(value)


def log_event(log: logging.Logger, level: int, message: str, **fields: Any) -> None:
    if not log.isEnabledFor(level):
        return
    if fields:
        rendered = " ".join(f"{k}={_render(v)}" for k, v in fields.items() if v is not None)
        message = f"{message} | {rendered}" if rendered else message
    log.log(level, message)


def request_context(method: str, path: str, status: int, **extra: Any) -> Dict[str, Any]:
    context = {"method": method, "path": path, "status": status}
    context.update(extra)
    return context
