"""flag_engine 用の structlog 設定"""

from __future__ import annotations

import logging
import sys

import structlog

COMPONENT = "flag_engine"

# HTTP シンクのリクエストごとのログは抑える
_QUIET_LOGGERS = ("httpx", "httpcore")


def _add_component(
    _logger: object, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    event_dict.setdefault("component", COMPONENT)
    return event_dict


def configure_logging(
    level: str = "INFO",
    format: str = "json",
    *,
    environment: str | None = None,
) -> structlog.types.FilteringBoundLogger:
    """structlog を設定し、エンジン用のロガーを返す。

    全イベントに component を付与し、environment 指定時はロガーに env を束縛する。
    format は "json" または "text"。
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _add_component,
        structlog.processors.TimeStamper(fmt="iso", key="ts"),
    ]
    renderer: list[structlog.types.Processor] = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if format == "json"
        else [structlog.dev.ConsoleRenderer()]
    )

    structlog.configure(
        processors=shared + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger: structlog.types.FilteringBoundLogger = structlog.get_logger("k1s0_flag_engine")
    if environment is not None:
        logger = logger.bind(env=environment)
    return logger
