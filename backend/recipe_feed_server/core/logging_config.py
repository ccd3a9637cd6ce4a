from __future__ import annotations

import logging

# Transport libraries that log every request/connection at DEBUG.
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "httpcore.connection",
    "httpcore.http11",
    "urllib3",
    "urllib3.connectionpool",
    "sqlalchemy.engine",
)

_FORMAT = '[%(levelname)s] %(name)s: %(message)s'


class _SuppressHealthcheckFilter(logging.Filter):
    """Drop uvicorn access lines for the root health endpoint."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging hook
        try:
            message = record.getMessage()
        except Exception:
            return True
        return '"GET / HTTP' not in message


_HEALTHCHECK_FILTER = _SuppressHealthcheckFilter()


def _ensure_filter(logger: logging.Logger) -> None:
    for existing in logger.filters:
        if existing is _HEALTHCHECK_FILTER:
            return
    logger.addFilter(_HEALTHCHECK_FILTER)


def _ensure_stream_handler(logger: logging.Logger) -> None:
    handler_exists = any(isinstance(h, logging.StreamHandler) for h in logger.handlers)
    if handler_exists:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(handler)


def configure_logging(level_name: str | None = None) -> None:
    """Configure the root logger and quiet per-request transport chatter."""

    lvl = getattr(logging, (level_name or 'INFO').upper(), None)
    if not isinstance(lvl, int):
        lvl = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(lvl)
    _ensure_stream_handler(root_logger)

    for noisy_name in _NOISY_LOGGERS:
        logger = logging.getLogger(noisy_name)
        if logger.level < logging.INFO:
            logger.setLevel(logging.INFO)
        logger.propagate = False

    _ensure_filter(logging.getLogger("uvicorn.access"))
