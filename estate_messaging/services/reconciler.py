import asyncio
from typing import Awaitable, Callable, List, Optional, Set

import structlog

from estate_messaging import config
from estate_messaging.database.base import CONVERSATIONS, MESSAGES, ChangeEvent, ChangeStream, StoreGateway
from estate_messaging.errors import MessagingError, StoreUnavailable

logger = structlog.get_logger()


class ChangeReconciler:
    """Keeps one user's snapshot in step with the store.

    Every change event triggers a full re-fetch through ``refresh``; rows are
    never patched from the event, since the feed carries no ordering or
    payload guarantee. Events that arrive while a re-fetch is running share
    that re-fetch instead of starting another one.
    """

    def __init__(
        self,
        user_id: str,
        gateway: StoreGateway,
        refresh: Callable[[], Awaitable[None]],
        retry_seconds: Optional[float] = None,
    ) -> None:
        self.user_id = user_id
        self._gateway = gateway
        self._refresh = refresh
        self._retry_seconds = config.RECONCILER_RETRY_SECONDS if retry_seconds is None else retry_seconds
        self._watches = [
            (CONVERSATIONS, {"participants": user_id}),
            (MESSAGES, {"$or": [{"sender_id": user_id}, {"receiver_id": user_id}]}),
        ]
        self._tasks: List[asyncio.Task] = []
        self._streams: Set[ChangeStream] = set()
        self._inflight: Optional[asyncio.Task] = None
        self.refreshes = 0
        self.coalesced = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        for table, query in self._watches:
            self._tasks.append(asyncio.create_task(self._watch(table, query)))
        logger.info("reconciler_started", user_id=self.user_id)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        if self._inflight is not None:
            tasks.append(self._inflight)
        for task in tasks:
            task.cancel()
        for stream in list(self._streams):
            await stream.close()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        self._inflight = None
        logger.info("reconciler_stopped", user_id=self.user_id)

    def schedule(self) -> asyncio.Task:
        """Start a re-fetch, or hand back the one already in flight."""
        if self._inflight is not None and not self._inflight.done():
            self.coalesced += 1
            return self._inflight
        self._inflight = asyncio.create_task(self._run_refresh())
        return self._inflight

    async def resync(self) -> None:
        """Unconditional full re-fetch, used after (re)connecting a stream."""
        if self._inflight is not None and not self._inflight.done():
            # it may have started before the gap; wait for it and fetch again
            await self._inflight
        self._inflight = None
        await self.schedule()

    async def handle(self, event: ChangeEvent) -> None:
        logger.debug("change_received", user_id=self.user_id, table=event.table, operation=event.operation)
        self.schedule()

    async def _run_refresh(self) -> None:
        self.refreshes += 1
        try:
            await self._refresh()
        except MessagingError as exc:
            # snapshot stays as it was; the next event fetches again
            logger.warning("reconcile_refresh_failed", user_id=self.user_id, error=str(exc))
        except Exception:
            # a malformed row, for one
            logger.exception("reconcile_refresh_crashed", user_id=self.user_id)

    async def _watch(self, table: str, query: dict) -> None:
        while True:
            try:
                stream = await self._gateway.subscribe(table, query)
            except StoreUnavailable as exc:
                logger.warning("change_subscribe_failed", table=table, error=str(exc))
                await asyncio.sleep(self._retry_seconds)
                continue

            self._streams.add(stream)
            try:
                await self.resync()
                async for event in stream:
                    await self.handle(event)
                # closed from our side
                return
            except StoreUnavailable as exc:
                logger.warning("change_stream_dropped", table=table, error=str(exc))
            finally:
                self._streams.discard(stream)
                await stream.close()
            await asyncio.sleep(self._retry_seconds)
