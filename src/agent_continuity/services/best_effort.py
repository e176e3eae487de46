"""Guards for the "never throw past this point" persistence boundary.

Continuity is an optimisation layer: a failed cache read is a miss, a
failed write is a no-op.  Every durable-store and external-tool call in
the engine goes through one of these two helpers.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def best_effort(label: str, op: Callable[[], T], default: T) -> T:
    try:
        return op()
    except Exception as exc:
        logger.warning("continuity: %s failed, continuing without it: %s", label, exc)
        return default


async def best_effort_async(label: str, op: Callable[[], Awaitable[T]], default: T) -> T:
    try:
        return await op()
    except Exception as exc:
        logger.warning("continuity: %s failed, continuing without it: %s", label, exc)
        return default
