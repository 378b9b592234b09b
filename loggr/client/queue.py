"""Bounded, debounced delivery queue.

Single event loop, no locks. Each enqueue restarts a short debounce timer; when
it fires one record is delivered, and the next one is scheduled a debounce
interval after that delivery finishes, whether it succeeded or not.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from loggr.client.rate_limiter import RateLimiter
from loggr.client.transport import Transport
from loggr.core.sanitization import sanitize_client_record

logger = logging.getLogger(__name__)

QUEUE_CAPACITY = 50
DEBOUNCE_SECONDS = 0.1
UNLOAD_BATCH_SIZE = 10


class ErrorQueue:
    def __init__(self,
                 transport: Transport,
                 limiter: Optional[RateLimiter] = None,
                 context_provider: Optional[Callable[[], Dict[str, Any]]] = None,
                 capacity: int = QUEUE_CAPACITY,
                 debounce_seconds: float = DEBOUNCE_SECONDS,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.transport = transport
        self.limiter = limiter or RateLimiter()
        self.context_provider = context_provider
        self.debounce_seconds = debounce_seconds
        # Keep-newest on overflow
        self._items: Deque[Dict[str, Any]] = deque(maxlen=capacity)
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._loop = loop
        self.is_processing = False
        self.sent_count = 0
        self.failed_count = 0

    def __len__(self) -> int:
        return len(self._items)

    def pending(self) -> List[Dict[str, Any]]:
        return list(self._items)

    def _get_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return self._loop

    def enqueue(self, record: Dict[str, Any]) -> bool:
        """Queue a record for delivery. False when rate limited or invalid."""
        if not isinstance(record, dict) or not record:
            logger.debug("Ignoring invalid error record")
            return False
        if not self.limiter.allow():
            logger.debug("Client rate limit exceeded, skipping error record")
            return False

        self._items.append(sanitize_client_record(record))
        loop = self._get_loop()
        if loop is None:
            # Nothing to drive delivery yet, the record waits for flush_on_unload()
            return True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._schedule(self.debounce_seconds)
        elif loop.is_closed():
            logger.debug("Event loop closed, record waits for the exit flush")
        else:
            loop.call_soon_threadsafe(self._schedule, self.debounce_seconds)
        return True

    def _schedule(self, delay: float) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._get_loop().call_later(delay, self._start_processing)

    def _start_processing(self) -> None:
        self._timer = None
        if self.is_processing or not self._items:
            return
        self._task = asyncio.get_running_loop().create_task(self._process_one())

    async def _process_one(self) -> None:
        if self.is_processing or not self._items:
            return
        self.is_processing = True
        record = self._items.popleft()
        if self.context_provider is not None:
            try:
                record.update(self.context_provider())
            except Exception as e:
                logger.debug(f"Context provider failed: {str(e)}")
        try:
            if await self.transport.send(record):
                self.sent_count += 1
            else:
                self.failed_count += 1
        except Exception as e:
            self.failed_count += 1
            logger.debug(f"Error record delivery failed: {str(e)}")
        finally:
            self.is_processing = False
            if self._items:
                self._schedule(self.debounce_seconds)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait until everything queued has been attempted."""
        async def _wait():
            while self._items or self.is_processing or self._timer is not None:
                await asyncio.sleep(self.debounce_seconds / 2 or 0.01)
        await asyncio.wait_for(_wait(), timeout=timeout)

    def cancel_timers(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def flush_on_unload(self) -> Optional[asyncio.Task]:
        """Cancel timers and fire the newest queued records in one request without waiting."""
        self.cancel_timers()
        if not self._items:
            return None
        records = list(self._items)[-UNLOAD_BATCH_SIZE:]
        self._items.clear()
        if self.context_provider is not None:
            try:
                context = self.context_provider()
                for record in records:
                    record.update(context)
            except Exception as e:
                logger.debug(f"Context provider failed: {str(e)}")
        return self.transport.send_batch_nowait(records)
