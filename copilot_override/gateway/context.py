from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Awaitable, TypeVar

from starlette.requests import Request

from copilot_override.errors import RequestTimeout

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

DISCONNECT_POLL_SECONDS = 0.1


class InboundContext:
    """Cancellation and deadline carried by one inbound request.

    ``guard`` runs an awaitable until it finishes, the caller goes away or the
    deadline passes. In the last two cases the awaitable is cancelled and
    ``RequestTimeout`` is raised.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._cancelled = asyncio.Event()
        self._deadline = (
            loop.time() + timeout_seconds if timeout_seconds is not None else None
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set() or self.remaining() == 0.0

    def cancel(self) -> None:
        self._cancelled.set()

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._loop.time())

    async def guard(self, awaitable: Awaitable[T]) -> T:
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RequestTimeout("inbound request cancelled")

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            result = await work
            # finished in the same tick as the deadline; release what it opened
            aclose = getattr(result, "aclose", None)
            if aclose is not None:
                await aclose()
        raise RequestTimeout("inbound request cancelled")

    @contextlib.asynccontextmanager
    async def watch_disconnect(self, request: Request) -> AsyncIterator[None]:
        """Cancel this context when ``request``'s client disconnects.

        Only enter this after the body has been consumed: polling for a
        disconnect drains pending body messages.
        """
        watcher = asyncio.create_task(self._poll_disconnect(request))
        try:
            yield
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

    async def _poll_disconnect(self, request: Request) -> Any:
        while not self._cancelled.is_set():
            if await request.is_disconnected():
                logger.info("inbound_client_disconnected path=%s", request.url.path)
                self._cancelled.set()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)
