from logging import Logger, _nameToLevel, basicConfig

from structlog import (
    configure_once,
    get_logger as structlog_get_logger,
    make_filtering_bound_logger,
)
from structlog.contextvars import merge_contextvars
from structlog.dev import ConsoleRenderer
from structlog.processors import (
    JSONRenderer,
    StackInfoRenderer,
    TimeStamper,
    UnicodeDecoder,
    add_log_level,
    format_exc_info,
)
from structlog.stdlib import PositionalArgumentsFormatter
from structlog.typing import Processor

from reminder.helpers.config import CONFIG
from reminder.helpers.config_models.monitoring import LoggingFormatEnum

_logging = CONFIG.monitoring.logging

# Default logging level for all the dependencies (aiosqlite, pywebpush, Azure SDK...)
basicConfig(level=_logging.sys_level.value)

# Renderer depends on the target, humans in a terminal or a log collector
_renderers: list[Processor] = (
    [format_exc_info, JSONRenderer()]
    if _logging.format == LoggingFormatEnum.JSON
    else [ConsoleRenderer()]
)

# Configure application logging
configure_once(
    cache_logger_on_first_use=True,
    context_class=dict,
    wrapper_class=make_filtering_bound_logger(_nameToLevel[_logging.app_level.value]),
    processors=[
        # Add contextvars support, event and user ids are bound by the scheduler
        merge_contextvars,
        # Add log level
        add_log_level,
        # Enable %s-style formatting
        PositionalArgumentsFormatter(),
        # Add timestamp
        TimeStamper(fmt="iso", utc=True),
        # Add exceptions info
        StackInfoRenderer(),
        # Decode Unicode to str
        UnicodeDecoder(),
        *_renderers,
    ],
)

# Framework does not exactly expose Logger, but that's easier to work with
logger: Logger = structlog_get_logger("event-reminder")
