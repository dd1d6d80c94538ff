from __future__ import annotations

import logging
import sys

import structlog

from ..settings import Settings, get_settings
from .context import get_request_id

# AWS SDK loggers that flood DEBUG output with wire-level detail.
_SDK_LOGGERS = ("botocore", "boto3", "urllib3")


def _add_request_id(_: logging.Logger, __: str, event_dict: dict) -> dict:
    rid = get_request_id()
    if rid:
        event_dict["request_id"] = rid
    return event_dict


_CONFIGURED = False


def _shared_processors() -> list:
    return [
        _add_request_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def configure_logging(*, level: str | int | None = None, settings: Settings | None = None) -> None:
    """
    Configure stdlib logging + structlog to output structured JSON to stdout.

    The level defaults to `LOG_LEVEL` from settings. Libraries embedding
    singletable usually own logging themselves; call this from scripts and
    services that want the JSON-lines output.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    if level is None:
        level = (settings or get_settings()).log_level
    if isinstance(level, str):
        level = level.strip().upper() or "INFO"

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=_shared_processors(),
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # Batch attempts log at INFO; SDK chatter stays at INFO or above.
    for name in _SDK_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.INFO, root.level))

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None):
    return structlog.get_logger(name)
