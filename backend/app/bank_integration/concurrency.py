"""
Single-flight helper

Collapses concurrent calls that share a key into one underlying operation.
Used for per-user token refresh and per-user full syncs.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable, Tuple


class SingleFlight:
    """
    Per-key in-flight call registry.

    The first caller for a key starts the operation; callers arriving while
    it runs await the same task and receive the same result or exception.
    Once it finishes the key is released and the next call starts afresh.
    Different keys never wait on each other.
    """

    def __init__(self):
        self._inflight: Dict[Hashable, Tuple[asyncio.Task, Hashable]] = {}

    async def run(self, key: Hashable, fn: Callable[[], Awaitable[Any]], tag: Hashable = None) -> Any:
        """
        Join the call running under `key`, or start `fn`.

        `tag` describes the request. A running call with a different tag is
        not joined: the caller waits for it to finish and then starts its own,
        so calls under one key never overlap.
        """
        while True:
            entry = self._inflight.get(key)
            if entry is None:
                task = asyncio.ensure_future(fn())
                self._inflight[key] = (task, tag)
                task.add_done_callback(lambda t, k=key: self._release(k, t))
                break

            task, running_tag = entry
            if running_tag == tag:
                break
            await asyncio.wait({task})

        # shield: one cancelled waiter must not cancel the shared operation
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        entry = self._inflight.get(key)
        if entry is not None and entry[0] is task:
            del self._inflight[key]
        # mark exception as retrieved when every waiter has gone away
        if not task.cancelled():
            task.exception()

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight
