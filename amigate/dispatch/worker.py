import asyncio
import logging
from abc import abstractmethod
from typing import List, Optional

from amigate.errors import ConfigurationError, SinkError
from amigate.models import Destination, Event
from amigate.stats import SinkStats

_STOP = object()


class SinkWorker:
    """
    Delivers the events routed to one destination.

    The router only calls :meth:`offer`, which never waits: when the queue is
    full the newest event is dropped and counted. The worker task takes events
    in batches (``batch_size`` events or ``flush_interval`` seconds, whichever
    comes first), writes them with :meth:`write` and retries a failed batch up
    to ``max_attempts`` times before dropping it.
    """
    kind = 'sink'

    def __init__(self, destination: Destination):
        self.logger = logging.getLogger('Sink')
        self.destination = destination
        self.id = destination.id
        if destination.queue_size <= 0:
            raise ConfigurationError(f"Destination {destination.id}: queue_size must be positive")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=destination.queue_size)
        self._task: Optional[asyncio.Task] = None
        self._dropping = False
        self.enqueued = 0
        self.delivered = 0
        self.dropped = 0
        self.failed = 0
        self.retries = 0
        self.last_error: Optional[str] = None

    @abstractmethod
    async def write(self, batch: List[Event]) -> None:
        """
        Stores a batch as one unit.

        :raises SinkError: Nothing of the batch may be considered stored
        """
        pass

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"sink-{self.id}")

    def offer(self, event: Event) -> bool:
        """
        Queues an event without waiting.

        :return: False when the queue was full and the event was dropped
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if not self._dropping:
                self._dropping = True
                self.logger.warning(f"[{self.id}] Queue full ({self._queue.maxsize}), dropping new events")
            return False
        if self._dropping:
            self._dropping = False
            self.logger.warning(f"[{self.id}] Queue accepting again, {self.dropped} event(s) dropped so far")
        self.enqueued += 1
        return True

    async def stop(self, timeout: float = 5.0) -> None:
        """
        Delivers what is queued, then closes the destination. After ``timeout``
        seconds the worker is cancelled; a write in flight still completes.
        """
        task, self._task = self._task, None
        if task is None:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        done = set()
        if not task.done():
            try:
                await asyncio.wait_for(self._queue.put(_STOP), timeout=timeout)
            except asyncio.TimeoutError:
                pass
            else:
                done, _ = await asyncio.wait({task}, timeout=max(deadline - loop.time(), 0))
        if task not in done and not task.done():
            self.logger.warning(f"[{self.id}] Not drained in {timeout}s, {self._queue.qsize()} event(s) left")
            task.cancel()
            await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"[{self.id}] Worker failed: {task.exception()!r}")

    async def _run(self) -> None:
        async with self:
            while True:
                batch, stop = await self._next_batch()
                if batch:
                    await self._deliver(batch)
                if stop:
                    break
        self.logger.debug(f"[{self.id}] Worker stopped")

    async def _next_batch(self):
        """Waits for one event, then collects more until the batch is full or the flush interval ends."""
        batch = []
        item = await self._queue.get()
        if item is _STOP:
            return batch, True
        batch.append(item)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.destination.flush_interval
        while len(batch) < self.destination.batch_size:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
            if item is _STOP:
                return batch, True
            batch.append(item)
        return batch, False

    async def _deliver(self, batch: List[Event]) -> bool:
        attempts = self.destination.max_attempts
        delay = self.destination.retry_delay
        for attempt in range(1, attempts + 1):
            try:
                await self._write_unit(batch)
            except Exception as e:
                if isinstance(e, SinkError):
                    self.last_error = str(e)
                else:
                    self.last_error = f"{type(e).__name__}: {e}"
                    self.logger.exception(f"[{self.id}] Unexpected write failure")
                if attempt == attempts:
                    break
                self.retries += 1
                self.logger.warning(f"[{self.id}] Write failed ({attempt}/{attempts}), retrying in {delay:.1f}s: {e}")
                await asyncio.sleep(delay)
                delay *= 2
            else:
                self.delivered += len(batch)
                return True
        self.failed += len(batch)
        first, last = batch[0], batch[-1]
        self.logger.error(f"[{self.id}] Dropped batch of {len(batch)} event(s) "
                          f"({first.server}#{first.sequence} .. {last.server}#{last.sequence}) "
                          f"after {attempts} attempt(s): {self.last_error}")
        return False

    async def _write_unit(self, batch: List[Event]) -> None:
        """Runs one write to completion even when the worker is cancelled meanwhile."""
        write = asyncio.ensure_future(self.write(batch))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            await asyncio.wait({write})
            if write.cancelled() or write.exception() is not None:
                self.failed += len(batch)
            else:
                self.delivered += len(batch)
            raise

    def stats(self) -> SinkStats:
        return SinkStats(
            destination=self.id,
            kind=self.kind,
            project=getattr(self.destination, 'project', None),
            queue_depth=self._queue.qsize(),
            enqueued=self.enqueued,
            delivered=self.delivered,
            dropped=self.dropped,
            failed=self.failed,
            retries=self.retries,
            last_error=self.last_error,
        )
