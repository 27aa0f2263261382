"""Fire-and-forget side effects.

Usage counters, progress counters and event notifications run after the
receipt transaction has committed. They are non-transactional: a failure
is logged and dropped and never unwinds state that is already durable.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """Schedules coroutines as detached asyncio tasks.

    Tasks are referenced until they finish so they are not garbage
    collected mid-flight. ``drain`` waits for everything scheduled so far,
    which the API lifespan and the tests use.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def dispatch(self, name: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(self._run(name, fn, *args, **kwargs), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> None:
        try:
            await fn(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("[background] %s failed", name, exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
