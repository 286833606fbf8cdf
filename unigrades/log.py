"""Logger factory and per-session context adapter.

Components receive a logger instead of reaching for a module global when they
act on behalf of a request, so every line can carry the token/username it
belongs to.
"""

from __future__ import annotations

import logging
import sys
from typing import Union

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

Logger = Union[logging.Logger, logging.LoggerAdapter]


def get_logger(name: str) -> logging.Logger:
    """Return a stderr logger configured once with the service format."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


class ContextLogger(logging.LoggerAdapter):
    """Prefixes messages with ``[token|username]``."""

    def process(self, msg, kwargs):
        parts = []
        token = self.extra.get("token")
        if token:
            parts.append(str(token)[:8])
        username = self.extra.get("username")
        if username:
            parts.append(str(username))
        if parts:
            msg = f"[{'|'.join(parts)}] {msg}"
        return msg, kwargs


def with_context(logger: Logger, token: str | None = None, username: str | None = None) -> ContextLogger:
    """Bind request/session context to ``logger``."""
    base = logger.logger if isinstance(logger, logging.LoggerAdapter) else logger
    extra = dict(getattr(logger, "extra", None) or {})
    if token:
        extra["token"] = token
    if username:
        extra["username"] = username
    return ContextLogger(base, extra)
