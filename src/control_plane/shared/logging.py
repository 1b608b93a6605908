import json
import logging
import os
from typing import Any, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """First call wins; later calls are no-ops once the root logger has handlers."""
    resolved = level or os.getenv("CONTROL_PLANE_LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(level=resolved.upper(), format=LOG_FORMAT)


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    # Unset fields are dropped so each line only carries what is known.
    payload = {"event": event, **{key: value for key, value in fields.items() if value is not None}}
    logger.log(level, json.dumps(payload, sort_keys=True, default=str))
