"""scapebot.logging_utils

One logging setup for every ScapeBot process.

Every line carries a ``guild`` column ("-" when the line is not about a
guild), timestamps are UTC, and error lines get a short id that users can
quote back from Discord.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import time
import uuid
from typing import Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-5s | %(name)-8s | %(guild)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("discord", "discord.http", "discord.gateway", "aiomysql", "urllib3")

_warned_until: Dict[str, float] = {}


class _GuildFieldFilter(logging.Filter):
    """Guarantee ``record.guild`` so the shared format string never fails."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "guild", None) is None:
            record.guild = "-"
        return True


def _build_handler(handler: logging.Handler) -> logging.Handler:
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    formatter.converter = time.gmtime
    handler.setFormatter(formatter)
    handler.addFilter(_GuildFieldFilter())
    return handler


def setup_logging(level: Optional[str] = None, *, log_file: Optional[str] = None) -> None:
    """Configure the root logger. Safe to call more than once.

    ``level`` defaults to SCAPEBOT_LOG_LEVEL (else INFO). ``log_file`` defaults
    to SCAPEBOT_LOG_FILE; when set, output is also written to a rotating file.
    """
    root = logging.getLogger()
    if getattr(root, "_scapebot_configured", False):
        return

    level_name = (level or os.getenv("SCAPEBOT_LOG_LEVEL") or "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.addHandler(_build_handler(logging.StreamHandler()))

    log_file = log_file or os.getenv("SCAPEBOT_LOG_FILE")
    if log_file:
        root.addHandler(
            _build_handler(logging.handlers.RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=3))
        )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root._scapebot_configured = True  # type: ignore[attr-defined]


def guild_label(guild_id: int | None, guild_name: str | None = None) -> str:
    if guild_id is None:
        return "-"
    return f"{guild_name} ({guild_id})" if guild_name else str(guild_id)


class GuildLoggerAdapter(logging.LoggerAdapter):
    """Logger bound to one guild; fills the ``guild`` column of every line."""

    def __init__(self, logger: logging.Logger, guild_id: int | None, guild_name: str | None = None):
        super().__init__(logger, {"guild": guild_label(guild_id, guild_name)})

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def new_error_id() -> str:
    return uuid.uuid4().hex[:6].upper()


def warn_ratelimited(
    logger: logging.Logger,
    *,
    key: str,
    message: str,
    every_seconds: int = 3600,
    guild: str | None = None,
) -> bool:
    """Log ``message`` at WARNING unless ``key`` already warned within ``every_seconds``.

    Returns True if the line was emitted.
    """
    now = time.monotonic()
    if now < _warned_until.get(key, 0.0):
        return False
    _warned_until[key] = now + every_seconds
    logger.warning(message, extra={"guild": guild or "-"})
    return True
