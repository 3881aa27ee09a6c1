from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

_ROOT = "relay_hub"
_HANDLER_ATTR = "_relay_hub_handler"

# LogRecord attributes that are not user-supplied `extra=` fields.
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg, plus any `extra=` fields."""

    def format(self, record: logging.LogRecord) -> str:
        out = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k, v in record.__dict__.items():
            if k in _RESERVED or k.startswith("_") or k in out:
                continue
            out[k] = v
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        return json.dumps(out, ensure_ascii=False, default=str)


def _parse_level(value: str | int | None, default: int = logging.INFO) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).strip().upper())
    return level if isinstance(level, int) else default


def configure_logging(*, level: str | int | None = None, json_mode: bool = True) -> logging.Logger:
    """(Re)configure the shared `relay_hub` logger.

    Replaces only the handler this module installed, so handlers attached by
    the host application are left alone. `RELAY_HUB_LOG_LEVEL` wins over
    `level`.
    """
    logger = logging.getLogger(_ROOT)
    logger.setLevel(_parse_level(os.getenv("RELAY_HUB_LOG_LEVEL") or level))

    for h in list(logger.handlers):
        if getattr(h, _HANDLER_ATTR, False):
            logger.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    if json_mode:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    setattr(handler, _HANDLER_ATTR, True)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = _ROOT) -> logging.Logger:
    """Return a logger below `relay_hub`, configuring the root of it on first use."""
    root = logging.getLogger(_ROOT)
    if not any(getattr(h, _HANDLER_ATTR, False) for h in root.handlers):
        configure_logging()
    if name == _ROOT or name.startswith(_ROOT + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT}.{name}")
