import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from engine_adapters.redaction import redact_text


request_id_ctx = contextvars.ContextVar("request_id", default="")
_logger = logging.getLogger("octoargosync.obs")

ROOT_LOGGER = "octoargosync"
_HANDLER_NAME = "octoargosync-default"


def get_request_id() -> str:
    return request_id_ctx.get() or ""


def log_event(event: str, level: str = "info", logger: Optional[logging.Logger] = None, **fields: Any) -> None:
    payload = {"event": event, "request_id": get_request_id()}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str):
            payload[key] = redact_text(value)
        else:
            payload[key] = value
    parts = [f"{key}={payload[key]}" for key in sorted(payload.keys())]
    target = logger or _logger
    target.log(logging.getLevelName(level.upper()), " ".join(parts))


class ProductionFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class DevelopmentFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(message)s")


def configure_logging(app_env: str = "") -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if handler.get_name() == _HANDLER_NAME:
            logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    if (app_env or "").strip().lower() == "production":
        handler.setFormatter(ProductionFormatter())
    else:
        handler.setFormatter(DevelopmentFormatter())
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger
