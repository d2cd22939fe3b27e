import asyncio
import inspect
import itertools
import logging
import threading
import time
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, DefaultDict, List, Optional, Set, Type

from jarvis_voice.app.events.base_event import BaseEvent, EventPriority

logger = logging.getLogger(__name__)

EventHandler = Callable[[BaseEvent], Any]

SLOW_HANDLER_SECONDS = 0.1


class EventBus:
    """Delivers session notifications (state changes, transcript lines, status) to subscribers.

    Published events wait in a priority queue and one worker task hands them to every
    handler whose subscribed type matches, so a subscriber sees the notifications of
    one priority level in the order the controller produced them. Handlers may be
    plain functions or coroutines; a failing handler is logged and skipped.

    The bus also owns the small thread pool used for blocking session work (model
    loading, calibration sampling). A calibration registers itself as a critical
    operation so the pool and worker are not torn down under it.

    Attributes:
        _handlers: Subscribed handlers keyed by event type.
        _queue: Entries of (priority, sequence, event).
        _worker: Dispatch task, None until started.
        _critical: IDs of operations that must finish before shutdown.
        _executor: Thread pool for blocking work, None after shutdown.
        _dropped: Count of events dropped under backpressure, by event type name.
    """

    def __init__(self, thread_pool_workers: int = 2, max_queue_size: int = 200) -> None:
        """Create the bus. The worker is started separately with ``start_worker``.

        Args:
            thread_pool_workers: Threads available to ``run_in_thread_pool``.
            max_queue_size: Queue length at which NORMAL and LOW events start being dropped.
        """
        self._handlers: DefaultDict[Type[BaseEvent], List[EventHandler]] = defaultdict(list)
        self._handlers_lock = threading.RLock()
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._max_queue_size = max_queue_size
        self._dropped: Counter = Counter()

        self._worker: Optional[asyncio.Task] = None
        self._closing = False

        self._critical: Set[str] = set()
        self._critical_lock = asyncio.Lock()

        self._executor: Optional[ThreadPoolExecutor] = ThreadPoolExecutor(
            max_workers=thread_pool_workers, thread_name_prefix="EventBus-Worker"
        )

    @property
    def dropped_events(self) -> Counter:
        return Counter(self._dropped)

    async def publish(self, event: BaseEvent) -> None:
        """Queue ``event`` for dispatch.

        Ignored once shutdown has begun. Under backpressure NORMAL and LOW events are
        dropped; CRITICAL and HIGH events (state changes, transcript lines) are always queued.
        """
        if self._closing:
            logger.debug(f"Bus closing, discarding {type(event).__name__}")
            return

        if not isinstance(event, BaseEvent):
            logger.error(f"Only BaseEvent instances can be published, got {type(event)}")
            return

        backlog = self._queue.qsize()
        if backlog >= self._max_queue_size:
            event_name = type(event).__name__
            if event.priority >= EventPriority.NORMAL:
                self._dropped[event_name] += 1
                logger.warning(f"Event backlog at {backlog}, dropping {event_name} (dropped so far: {self._dropped[event_name]})")
                return
            logger.error(f"Event backlog at {backlog}, queueing {event_name} anyway")

        await self._queue.put((event.priority, next(self._sequence), event))

    def subscribe(self, event_type: Type[BaseEvent], handler: EventHandler) -> None:
        """Register ``handler`` for ``event_type`` and its subclasses. Callable from any thread."""
        if not (inspect.isclass(event_type) and issubclass(event_type, BaseEvent)):
            logger.error(f"Subscription rejected, not a BaseEvent type: {event_type}")
            return
        if not callable(handler):
            logger.error(f"Subscription rejected, handler is not callable: {type(handler)}")
            return

        with self._handlers_lock:
            self._handlers[event_type].append(handler)
        logger.debug(f"{getattr(handler, '__name__', handler)} subscribed to {event_type.__name__}")

    def _handlers_for(self, event: BaseEvent) -> List[EventHandler]:
        with self._handlers_lock:
            return [
                handler
                for event_type, handlers in self._handlers.items()
                if isinstance(event, event_type)
                for handler in handlers
            ]

    async def _dispatch(self, event: BaseEvent) -> None:
        handlers = self._handlers_for(event)
        if not handlers:
            logger.debug(f"No subscribers for {type(event).__name__}")
            return

        for handler in handlers:
            handler_name = getattr(handler, "__name__", repr(handler))
            started = time.monotonic()
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler {handler_name} failed on {type(event).__name__}: {e}", exc_info=True)
                continue

            elapsed = time.monotonic() - started
            if elapsed > SLOW_HANDLER_SECONDS:
                logger.warning(f"Handler {handler_name} took {elapsed:.3f}s on {type(event).__name__}")

    async def _run_worker(self) -> None:
        logger.debug("Dispatch worker running")
        while not self._closing:
            try:
                _, _, event = await self._queue.get()
            except asyncio.CancelledError:
                logger.debug("Dispatch worker cancelled")
                break

            try:
                await self._dispatch(event)
            except asyncio.CancelledError:
                self._queue.task_done()
                logger.debug("Dispatch worker cancelled mid-event")
                break
            except Exception as e:
                logger.critical(f"Dispatch worker error: {e}", exc_info=True)

            self._queue.task_done()
            await asyncio.sleep(0)

    async def start_worker(self) -> None:
        """Start dispatching. Repeated calls while the worker runs do nothing."""
        if self._closing:
            logger.debug("Bus closing, worker not started")
            return
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_worker())

    async def wait_until_idle(self, timeout: float = 2.0) -> None:
        """Block until every queued event has been handed to its subscribers."""
        await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def run_in_thread_pool(self, func: Callable, *args, **kwargs) -> Any:
        """Run blocking ``func(*args, **kwargs)`` on the bus pool and await its result.

        Raises:
            RuntimeError: The bus has already been shut down.
        """
        if self._executor is None:
            raise RuntimeError("Thread pool has been shutdown")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def stop_worker(self) -> None:
        """Drain pending events, stop the worker, drop subscribers and close the pool.

        Does nothing while a critical operation is registered.
        """
        async with self._critical_lock:
            pending_ops = sorted(self._critical)
        if pending_ops:
            logger.warning(f"Shutdown postponed, critical operations still running: {pending_ops}")
            return

        try:
            await self.wait_until_idle()
        except asyncio.TimeoutError:
            logger.warning(f"Shutdown drain timed out, discarding {self._queue.qsize()} events")

        self._closing = True
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                logger.debug("Dispatch worker stopped")

        with self._handlers_lock:
            self._handlers.clear()

        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        logger.debug("Event bus stopped")

    async def register_critical_operation(self, operation_id: str) -> None:
        async with self._critical_lock:
            self._critical.add(operation_id)
        logger.debug(f"Critical operation started: {operation_id}")

    async def unregister_critical_operation(self, operation_id: str) -> None:
        async with self._critical_lock:
            self._critical.discard(operation_id)
        logger.debug(f"Critical operation finished: {operation_id}")

    async def has_critical_operations(self) -> bool:
        async with self._critical_lock:
            return bool(self._critical)
