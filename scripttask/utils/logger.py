"""
structlog setup for the scheduler and remediation services.

Development renders colored console lines; every other environment emits one
JSON object per event so log shippers can index schedule and execution ids.
"""

import logging
import sys
from typing import Any, Dict, List, Optional

import structlog
from structlog.types import Processor

from scripttask.core.config import settings


def _base_processors() -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
    ]


def _renderers(console: bool) -> List[Processor]:
    if console:
        return [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(level: Optional[str] = None, console: Optional[bool] = None) -> None:
    """
    Route structlog through the stdlib root logger.

    Args:
        level: Overrides LOG_LEVEL from settings
        console: Force console (True) or JSON (False) rendering; defaults to
            console in development only
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    if console is None:
        console = settings.is_development

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    structlog.configure(
        processors=_base_processors() + _renderers(console),
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def add_schedule_context(schedule_id: str, node_id: Optional[str] = None) -> Dict[str, Any]:
    """Fields identifying one schedule firing, for ``logger.bind``."""
    context: Dict[str, Any] = {"schedule_id": schedule_id}
    if node_id:
        context["node_id"] = node_id
    return context


def add_execution_context(execution_id: str, step_id: Optional[str] = None) -> Dict[str, Any]:
    """Fields identifying a remediation execution and, optionally, its step."""
    context: Dict[str, Any] = {"execution_id": execution_id}
    if step_id:
        context["step_id"] = step_id
    return context
