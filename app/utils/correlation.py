"""Correlation ids and archive identifiers bound into the structlog context."""

from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

import structlog

CORRELATION_HEADER = "X-Correlation-ID"


def current_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def ensure_correlation_id(value: Optional[str] = None) -> str:
    """Bind ``value`` (or the current id, or a new one) and return it."""
    correlation_id = (value or "").strip() or current_correlation_id() or uuid4().hex
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    return correlation_id


def bind_archive_context(
    post_id: Optional[str] = None, url: Optional[str] = None, **extra: Any
) -> None:
    """Bind the post and URL being archived.

    Worker threads start with an empty context, so a fresh correlation id is
    bound alongside unless one is passed in ``extra``.
    """
    extra.setdefault("correlation_id", uuid4().hex)
    structlog.contextvars.bind_contextvars(post_id=post_id, url=url, **extra)


def clear_correlation_context() -> None:
    structlog.contextvars.clear_contextvars()
