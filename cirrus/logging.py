"""Logging configuration for cirrus.

cirrus logs through loguru and stays silent by default (library behavior).
Logging is enabled when a workflow runs with a LogConfig; records carry the
emitting component and, where known, the workflow and step names.

Example:
    from cirrus import LogConfig, Workflow

    wf = Workflow.create("image-build", log=LogConfig(level="DEBUG", file="cirrus.log"))
    await wf.run()
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Literal, TypeAlias

from loguru import logger

logger.disable("cirrus")

LogLevel: TypeAlias = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan>{extra[where]} - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]}{extra[where]} | "
    "{name}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration for a workflow.

    Attributes:
        level: Minimum console log level.
        file: Path to a log file. Everything from DEBUG up is written there.
        json: Write the log file as JSON lines instead of text.
        console: Whether to log to stderr.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    json: bool = False
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def _annotate(record: dict) -> bool:
    if not record["name"].startswith("cirrus"):
        return False
    extra = record["extra"]
    extra.setdefault("component", record["name"].rpartition(".")[2])
    scope = [extra[k] for k in ("workflow", "step") if k in extra]
    extra["where"] = f" [{'/'.join(scope)}]" if scope else ""
    return True


def setup_logging(config: LogConfig) -> list[int]:
    """Enable cirrus logging and return the handler IDs for teardown."""
    logger.enable("cirrus")
    ids: list[int] = []

    if config.console:
        ids.append(logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter=_annotate,
        ))

    if config.file:
        ids.append(logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            serialize=config.json,
            rotation=config.rotation,
            retention=config.retention,
            diagnose=False,
            enqueue=True,
            filter=_annotate,
        ))

    return ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove the given handlers and silence cirrus again."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("cirrus")
