from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)

# 持有引用，防止后台任务被 GC 提前回收
_background: Set[asyncio.Task] = set()


def spawn(
    coro: Coroutine[Any, Any, Any],
    name: Optional[str] = None,
    log: Optional[logging.Logger] = None,
) -> asyncio.Task:
    """Run ``coro`` in the background; failures are logged, never raised."""
    task = asyncio.get_running_loop().create_task(coro, name=name)
    _background.add(task)

    def _done(t: asyncio.Task) -> None:
        _background.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            (log or logger).error(
                "background task %s failed: %s", t.get_name(), exc, exc_info=exc
            )

    task.add_done_callback(_done)
    return task


async def drain_background(timeout: float = 5.0) -> None:
    pending = [t for t in _background if not t.done()]
    if pending:
        await asyncio.wait(pending, timeout=timeout)
