"""
Logger configuration for the projection engine.

Engine modules log through ``loguru.logger`` directly. Every record is tagged
with the component that emitted it (estimator, planner, optimizer, ...) so a
run can be followed stage by stage; callers may bind their own component,
e.g. ``logger.bind(component="api")``.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[component]: <11}</magenta> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]: <11} | {name}:{function}:{line} - {message}"


def _tag_component(record) -> None:
    extra = record["extra"]
    if "component" not in extra:
        extra["component"] = record["name"].rsplit(".", 1)[-1]


def setup_logger(
    level: str = "INFO",
    log_file: Optional[str] = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """Attach console and optional rotating file sinks.

    Called by the CLI and the API entry points only; importing the engine
    never configures logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a log file. If None, only console logging.
        rotation: Log rotation size (e.g., "10 MB", "1 day")
        retention: Log retention period (e.g., "7 days", "1 month")
    """
    logger.remove()
    logger.configure(patcher=_tag_component)

    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_path,
            format=FILE_FORMAT,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            backtrace=True,
            diagnose=False,
        )

    logger.bind(component="logger").debug(f"Logging at {level}" + (f", file {log_file}" if log_file else ""))
