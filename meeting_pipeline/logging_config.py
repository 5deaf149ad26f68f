"""
Logging for the pipeline worker and API.

Every record leaves the process as one JSON line on stdout. structlog
events carry whatever meeting context is bound at the time they are
emitted (see ``LogContext``), so a single meeting can be followed across
stages by filtering on ``meeting_id``.
"""
import logging
import sys
from typing import Any, Dict

import structlog
from pythonjsonlogger import jsonlogger


# Third-party loggers that are too chatty at INFO for a polling worker.
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "sqlalchemy.engine", "uvicorn.access")

PIPELINE_FIELDS = {
    "asctime": "timestamp",
    "levelname": "level",
    "name": "logger",
}


def _drop_empty_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in event_dict.items() if value is not None}


def _stdout_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        rename_fields=PIPELINE_FIELDS,
    ))
    return handler


def setup_logging(debug: bool = False) -> None:
    """
    Route stdlib and structlog output through a single JSON handler.

    Safe to call more than once; earlier handlers on the root logger are
    replaced rather than stacked.
    """
    level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(_stdout_handler(level))
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _drop_empty_context,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)


class LogContext:
    """
    Bind meeting fields (meeting_id, detail_type, stage) to every log line
    emitted inside the block. None values are not bound.

    Nested blocks restore the outer values on exit.
    """

    def __init__(self, **fields):
        self.fields = {key: value for key, value in fields.items() if value is not None}
        self._tokens = {}

    def __enter__(self):
        self._tokens = structlog.contextvars.bind_contextvars(**self.fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        structlog.contextvars.reset_contextvars(**self._tokens)
        self._tokens = {}
