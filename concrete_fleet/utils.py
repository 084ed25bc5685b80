"""Small helpers shared by the broker and the workflow components."""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

import structlog

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def routing_key_matches(pattern: str, routing_key: str) -> bool:
    """Match *routing_key* against a topic binding *pattern*.

    Words are separated by dots; ``*`` matches exactly one word and ``#``
    matches zero or more words.
    """
    return _match_words(pattern.split("."), routing_key.split(".") if routing_key else [])


def _match_words(pattern: List[str], words: List[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        # '#' can swallow any number of words, including none
        return any(_match_words(rest, words[index:]) for index in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


def jittered_duration(base_seconds: float, jitter: float, rng: Optional[random.Random] = None) -> float:
    """Return *base_seconds* spread uniformly by +/- *jitter* (a fraction)."""
    if base_seconds <= 0:
        return 0.0
    draw = (rng or random).uniform(1 - jitter, 1 + jitter)
    return round(base_seconds * draw, 3)


async def run_periodically(interval: float, action: Callable[[], Awaitable[object]], name: str) -> None:
    """Call *action* every *interval* seconds until cancelled.

    A failing pass is logged and the next one still runs.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic task failed", task=name)


__all__ = ["utc_now", "routing_key_matches", "jittered_duration", "run_periodically"]
