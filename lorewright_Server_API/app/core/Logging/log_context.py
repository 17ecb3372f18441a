"""
Lightweight logging context helpers for propagating resolution identifiers.

Usage:

    from lorewright_Server_API.app.core.Logging.log_context import log_context, new_request_id

    with log_context(request_id=new_request_id(), chat_id=chat_id, ps_component="world_info") as log:
        log.info("Resolving world info")
        ...

The context manager both contextualizes the base logger (so nested logs inherit
the fields) and returns a bound logger for convenience.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator
import uuid

from loguru import logger


def new_request_id() -> str:
    """Return a new opaque request identifier (hex)."""
    return uuid.uuid4().hex


@contextmanager
def log_context(**fields: Any) -> Iterator[Any]:
    """Context manager that sets structured logging fields and yields a bound logger.

    - Adds fields to the logger context (via logger.contextualize) so that any
      logs emitted inside the context inherit them.
    - Yields a logger bound with the same fields for direct use.
    - Fields whose value is None are dropped.
    """
    clean = {k: v for k, v in fields.items() if v is not None}
    with logger.contextualize(**clean):
        yield logger.bind(**clean)
