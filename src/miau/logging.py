"""structlog setup for the bot process.

Events are dotted names (``connection.open``) with key/value fields. The
manager binds the session generation into the context of each session task,
so everything a session logs carries ``session=<n>``. Phone numbers inside
JIDs are masked before any renderer sees them.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# user part of a phone-number JID, optionally with a device suffix
PHONE_JID_RE = re.compile(
    r"\b(\d+?)(\d{4})((?::\d+)?@(?:s\.whatsapp\.net|c\.us|lid))"
)

_log_file: TextIO | None = None


def redact_text(value: str) -> str:
    return PHONE_JID_RE.sub(
        lambda m: "*" * len(m.group(1)) + m.group(2) + m.group(3), value
    )


def _redact(value: Any) -> Any:
    match value:
        case str():
            return redact_text(value)
        case dict():
            return {key: _redact(item) for key, item in value.items()}
        case list():
            return [_redact(item) for item in value]
        case tuple():
            return tuple(_redact(item) for item in value)
        case _:
            return value


def redact_jids(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    _ = logger, method_name
    return {key: _redact(value) for key, value in event_dict.items()}


def get_logger(name: str | None = None) -> Any:
    if name:
        return structlog.get_logger(logger=name)
    return structlog.get_logger()


def bind_context(**fields: Any) -> None:
    structlog.contextvars.bind_contextvars(**fields)


def _level_from_env(*, debug: bool) -> int:
    if debug:
        return logging.DEBUG
    name = os.environ.get("MIAU_LOG_LEVEL", "info").strip().upper()
    level = logging.getLevelNamesMapping().get(name)
    return level if level is not None else logging.INFO


def _use_color() -> bool:
    override = os.environ.get("MIAU_LOG_COLOR")
    if override is None:
        return sys.stderr.isatty()
    return override.strip().lower() in {"1", "true", "yes", "on"}


def _open_log_file(path: str) -> TextIO | None:
    try:
        return Path(path).expanduser().open("a", encoding="utf-8")
    except OSError as exc:
        print(f"miau: cannot open log file {path}: {exc}", file=sys.stderr)
        return None


def setup_logging(
    *, debug: bool = False, cache_logger_on_first_use: bool = True
) -> None:
    """Configure structlog from ``MIAU_LOG_*``.

    ``MIAU_LOG_LEVEL`` sets the minimum level (``--debug`` forces debug).
    ``MIAU_LOG_FORMAT=json`` switches from the console renderer to JSON lines.
    ``MIAU_LOG_FILE`` sends JSON lines to that file instead of stderr, for
    running under a supervisor that does not keep terminal output.
    """
    global _log_file

    if _log_file is not None:
        _log_file.close()
        _log_file = None
    log_file = os.environ.get("MIAU_LOG_FILE")
    if log_file:
        _log_file = _open_log_file(log_file)

    as_json = (
        _log_file is not None
        or os.environ.get("MIAU_LOG_FORMAT", "console").strip().lower() == "json"
    )
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_jids,
    ]
    if as_json:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=_use_color()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _level_from_env(debug=debug)
        ),
        logger_factory=structlog.WriteLoggerFactory(
            file=_log_file if _log_file is not None else sys.stderr
        ),
        cache_logger_on_first_use=cache_logger_on_first_use,
    )
