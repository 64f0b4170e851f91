"""In-process event bus with at-least-once delivery."""

import asyncio
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Set
import logging

from gateway.models import Event, EventKind
from gateway.utils.clock import utcnow

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Awaitable[None]]


@dataclass
class Subscription:
    name: str
    kind: EventKind
    handler: Handler


@dataclass
class Delivery:
    event: Event
    subscription: Subscription
    attempt: int = 1


class EventBus:
    """Fan-out of normalized events to subscribers.

    ``publish`` only enqueues one delivery per subscriber and returns; worker
    tasks run the handlers. A failing handler is retried after a delay and
    dead-lettered once ``max_attempts`` is reached. Handlers must tolerate
    seeing the same event more than once.
    """

    def __init__(self, workers: int = 4, max_attempts: int = 3, retry_delay: float = 1.0):
        self.num_workers = workers
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.queue: asyncio.Queue = asyncio.Queue()
        self.dead_letters: Deque[Dict] = deque(maxlen=1000)
        self.stats: Counter = Counter()
        self._subscriptions: Dict[EventKind, List[Subscription]] = defaultdict(list)
        self._workers: List[asyncio.Task] = []
        self._retries: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings) -> "EventBus":
        return cls(
            workers=settings.event_bus_workers,
            max_attempts=settings.event_bus_max_attempts,
            retry_delay=settings.event_bus_retry_delay,
        )

    @property
    def running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    def subscribe(self, kind: EventKind, handler: Handler, name: Optional[str] = None) -> Subscription:
        subscription = Subscription(name=name or getattr(handler, "__qualname__", repr(handler)), kind=kind, handler=handler)
        self._subscriptions[kind].append(subscription)
        logger.info(f"Subscribed {subscription.name} to {kind.value}")
        return subscription

    def subscribers(self, kind: EventKind) -> List[Subscription]:
        return list(self._subscriptions.get(kind, []))

    def publish(self, event: Event) -> int:
        """Enqueue the event for every subscriber of its kind. Never blocks."""
        subscriptions = self._subscriptions.get(event.kind, [])
        for subscription in subscriptions:
            self.queue.put_nowait(Delivery(event=event, subscription=subscription))
        self.stats["published"] += 1
        logger.debug(f"Published {event.kind.value} event {event.id} to {len(subscriptions)} subscribers")
        return len(subscriptions)

    async def start(self) -> None:
        """Start delivery workers."""
        if self.running:
            return
        logger.info(f"Starting event bus with {self.num_workers} workers")
        self._workers = [
            asyncio.create_task(self._process_deliveries(f"worker_{i}"))
            for i in range(self.num_workers)
        ]

    async def drain(self) -> None:
        """Wait until every queued delivery, including pending retries, has finished."""
        while True:
            await self.queue.join()
            if not self._retries:
                break
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    async def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Drain in-flight deliveries, then stop the workers."""
        logger.info("Stopping event bus...")
        if self.running:
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Event bus drain timed out with {self.queue.qsize()} deliveries queued")

        for task in list(self._retries):
            task.cancel()
        for worker in self._workers:
            if not worker.done():
                worker.cancel()

        if self._workers or self._retries:
            await asyncio.gather(*self._workers, *self._retries, return_exceptions=True)
        self._workers = []
        self._retries.clear()

    async def _process_deliveries(self, worker_name: str):
        logger.debug(f"Event bus worker {worker_name} started")
        while True:
            delivery = await self.queue.get()
            try:
                await self._deliver(delivery)
            finally:
                self.queue.task_done()

    async def _deliver(self, delivery: Delivery) -> None:
        event, subscription = delivery.event, delivery.subscription
        try:
            await subscription.handler(event)
            self.stats["delivered"] += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if delivery.attempt < self.max_attempts:
                self.stats["retried"] += 1
                logger.warning(
                    f"Subscriber {subscription.name} failed on {event.kind.value} event {event.id} "
                    f"(attempt {delivery.attempt}/{self.max_attempts}): {e}"
                )
                retry = asyncio.create_task(self._retry(delivery))
                self._retries.add(retry)
                retry.add_done_callback(self._retries.discard)
            else:
                self._dead_letter(delivery, e)

    async def _retry(self, delivery: Delivery) -> None:
        await asyncio.sleep(self.retry_delay * delivery.attempt)
        self.queue.put_nowait(
            Delivery(event=delivery.event, subscription=delivery.subscription, attempt=delivery.attempt + 1)
        )

    def _dead_letter(self, delivery: Delivery, error: Exception) -> None:
        self.stats["dead_lettered"] += 1
        self.dead_letters.append({
            "event_id": delivery.event.id,
            "kind": delivery.event.kind.value,
            "subscriber": delivery.subscription.name,
            "attempts": delivery.attempt,
            "error": str(error),
            "failed_at": utcnow(),
        })
        logger.error(
            f"Event {delivery.event.id} ({delivery.event.kind.value}) dead-lettered for "
            f"{delivery.subscription.name} after {delivery.attempt} attempts: {error}",
            exc_info=error,
        )


def verify_exhaustive(table: Mapping[EventKind, object], owner: str) -> None:
    """Fail fast when a handler table misses an event kind."""
    missing = [kind.value for kind in EventKind if kind not in table]
    if missing:
        raise TypeError(f"{owner} has no handler for event kinds: {', '.join(missing)}")
