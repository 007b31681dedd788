"""Consumer side: decode, deduplicate, deliver to handlers with retry and dead-lettering.

One worker per (topic, partition). A worker takes one message at a time and
does not poll the next until the current one is ACKED or DEAD_LETTERED and
its offset is committed. That keeps per-key order; a slow or retrying handler
blocks its partition (head-of-line) but no other.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from notifier.backoff import Backoff
from notifier.broker.contract import BrokerClient, BrokerMessage
from notifier.dead_letter import DeadLetterSink
from notifier.events import codec
from notifier.events.errors import BrokerError, DecodeError, HandlerError
from notifier.events.models import (
    AttemptOutcome,
    DeadLetterEntry,
    DeliveryAttempt,
    DeliveryOrder,
    Event,
    Handler,
    MessageState,
    Subscription,
)
from notifier.events.types import EventType
from notifier.idempotency import IdempotencyTracker
from notifier.observability import Collector

logger = logging.getLogger(__name__)

__all__ = ["Dispatcher", "RetryPolicy"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    """max_attempts counts the first try. Delay before retry n is base * 2**(n-1), capped."""

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter_ratio: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def backoff(self) -> Backoff:
        return Backoff(self.base_delay, self.max_delay, self.jitter_ratio)


class _HandlerTimeout(Exception):
    """handler_timeout elapsed. Distinct from a TimeoutError the handler raises itself."""


class Dispatcher:
    """Routes broker messages to registered handlers.

    handler_timeout bounds each handler call (None disables it). A sync handler
    runs in a worker thread, which cannot be interrupted: after a timeout the
    dispatcher waits for that thread to return before the next attempt, so a
    handler never runs twice on the same event at once.
    """

    def __init__(
        self,
        broker: BrokerClient,
        topics: list[str],
        group_id: str,
        collector: Collector,
        dead_letters: DeadLetterSink,
        retry: RetryPolicy | None = None,
        reconnect: RetryPolicy | None = None,
        poll_timeout: float = 1.0,
        idempotency_capacity: int = 10_000,
        handler_timeout: float | None = None,
    ) -> None:
        if not topics:
            raise ValueError("at least one topic is required")
        self._broker = broker
        self._topics = list(topics)
        self._group_id = group_id
        self._collector = collector
        self._dead_letters = dead_letters
        self._retry = retry or RetryPolicy()
        self._reconnect = reconnect or RetryPolicy(base_delay=0.5, max_delay=10.0)
        self._poll_timeout = poll_timeout
        self._idempotency_capacity = idempotency_capacity
        self._handler_timeout = handler_timeout
        self._subscriptions: dict[str, Subscription] = {}
        self._table: dict[EventType, list[Subscription]] = {}
        self._trackers: dict[str, IdempotencyTracker] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._started = False

    # --- registration ---

    def register_handler(
        self,
        event_types: Iterable[EventType | str],
        handler: Handler,
        delivery_order: DeliveryOrder = DeliveryOrder.PER_SUBJECT,
        handler_id: str | None = None,
    ) -> Subscription:
        """Add handler to the dispatch table. Only allowed before start()."""
        if self._started:
            raise RuntimeError("handlers must be registered before the dispatcher starts")
        types = frozenset(EventType.parse(t) for t in event_types)
        if not types:
            raise ValueError("event_types must not be empty")
        if handler_id is None:
            handler_id = getattr(handler, "__qualname__", None) or repr(handler)
        if handler_id in self._subscriptions:
            raise ValueError(f"handler id already registered: {handler_id}")
        subscription = Subscription(
            handler_id=handler_id,
            event_types=types,
            delivery_order=DeliveryOrder(delivery_order),
            handler=handler,
        )
        self._subscriptions[handler_id] = subscription
        self._trackers[handler_id] = IdempotencyTracker(self._idempotency_capacity)
        for event_type in types:
            self._table.setdefault(event_type, []).append(subscription)
        logger.info(
            "Registered handler %s for %s (order=%s)",
            handler_id,
            sorted(t.value for t in types),
            subscription.delivery_order.value,
        )
        return subscription

    def subscriptions_for(self, event_type: EventType) -> list[Subscription]:
        return list(self._table.get(event_type, []))

    def tracker(self, handler_id: str) -> IdempotencyTracker:
        return self._trackers[handler_id]

    # --- lifecycle ---

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Spawn one worker per partition of every topic."""
        if self._started:
            raise RuntimeError("dispatcher already started")
        self._started = True
        self._stopping.clear()
        for topic in self._topics:
            for partition in self._broker.partitions_for(topic):
                self._tasks.append(
                    asyncio.create_task(
                        self._run_partition(topic, partition),
                        name=f"dispatch:{topic}[{partition}]",
                    )
                )
        logger.info(
            "Dispatcher started: group=%s topics=%s workers=%d",
            self._group_id,
            self._topics,
            len(self._tasks),
        )

    async def stop(self, grace: float = 10.0) -> None:
        """Stop polling, dead-letter pending retries, wait up to grace for in-flight handlers."""
        if not self._started:
            return
        self._stopping.set()
        tasks, self._tasks = self._tasks, []
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if pending:
                logger.warning(
                    "Dispatcher: cancelled %d worker(s) after %.1fs grace; "
                    "their uncommitted messages will be redelivered",
                    len(pending),
                    grace,
                )
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "Dispatcher worker %s failed: %s", task.get_name(), task.exception()
                    )
        self._started = False
        logger.info("Dispatcher stopped")

    async def _sleep(self, delay: float) -> bool:
        """Sleep unless shutdown starts first. Returns False on shutdown."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    # --- partition worker ---

    async def _run_partition(self, topic: str, partition: int) -> None:
        reconnect = self._reconnect.backoff()
        assigned = False
        while not self._stopping.is_set():
            try:
                if not assigned:
                    await self._broker.seek_to_committed(topic, partition, self._group_id)
                    assigned = True
                message = await self._broker.poll(
                    topic, partition, self._group_id, timeout=self._poll_timeout
                )
            except BrokerError as e:
                assigned = False
                delay = reconnect.next_delay()
                logger.warning(
                    "Dispatcher %s[%d]: broker unavailable (%s), retrying in %.2fs",
                    topic,
                    partition,
                    e,
                    delay,
                )
                if not await self._sleep(delay):
                    break
                continue
            reconnect.reset()
            if message is None or self._stopping.is_set():
                # a message polled during shutdown stays uncommitted and is redelivered
                continue
            try:
                await self.process_message(message)
            except Exception as e:
                logger.exception(
                    "Dispatcher %s[%d]: processing offset %d failed, will redeliver: %s",
                    topic,
                    partition,
                    message.offset,
                    e,
                )
                assigned = False
                if not await self._sleep(reconnect.next_delay()):
                    break
                continue
            await self._commit(message)

    async def _commit(self, message: BrokerMessage) -> None:
        """Retry until the broker accepts the commit. Cancelled only by stop() after grace."""
        backoff = self._reconnect.backoff()
        while True:
            try:
                await self._broker.commit(message, self._group_id)
                return
            except BrokerError as e:
                delay = backoff.next_delay()
                logger.warning(
                    "Dispatcher %s[%d]: commit of offset %d failed (%s), retrying in %.2fs",
                    message.topic,
                    message.partition,
                    message.offset,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)

    # --- per-message state machine ---

    def _trace(self, message: BrokerMessage, state: MessageState, detail: str = "") -> None:
        logger.debug(
            "%s[%d]@%d -> %s %s",
            message.topic,
            message.partition,
            message.offset,
            state.value,
            detail,
        )

    async def process_message(self, message: BrokerMessage) -> MessageState:
        """Drive one message to ACKED or DEAD_LETTERED. Does not commit."""
        self._trace(message, MessageState.RECEIVED)
        self._trace(message, MessageState.DECODING)
        decoded = codec.decode(message.data)
        if isinstance(decoded, DecodeError):
            await self._dead_letter(message, None, None, f"decode failed: {decoded}", [])
            return self._finish(message, MessageState.DEAD_LETTERED)

        event = decoded
        subscriptions = self._table.get(event.type, [])
        self._trace(message, MessageState.HANDLING, f"{event.type.value} {event.id}")
        if not subscriptions:
            return self._finish(message, MessageState.ACKED)

        tasks = [
            asyncio.create_task(self._deliver(sub, event, message)) for sub in subscriptions
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            # the message will be redelivered; no sibling may keep handling this copy
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        if MessageState.DEAD_LETTERED in outcomes:
            return self._finish(message, MessageState.DEAD_LETTERED)
        return self._finish(message, MessageState.ACKED)

    def _finish(self, message: BrokerMessage, state: MessageState) -> MessageState:
        self._trace(message, state)
        self._collector.message_finished(state)
        return state

    async def _deliver(
        self, subscription: Subscription, event: Event, message: BrokerMessage
    ) -> MessageState:
        """Run one handler to a terminal state. Never raises except on cancellation."""
        handler_id = subscription.handler_id
        tracker = self._trackers[handler_id]
        if tracker.seen(event.id):
            logger.info("Duplicate %s %s suppressed for %s", event.type.value, event.id, handler_id)
            return MessageState.ACKED

        backoff = self._retry.backoff()
        max_attempts = self._retry.max_attempts
        attempts: list[DeliveryAttempt] = []
        for attempt_number in range(1, max_attempts + 1):
            dispatched_at = _utcnow()
            error = await self._invoke(subscription, event)

            if error is None:
                attempts.append(
                    self._record(event, handler_id, attempt_number, dispatched_at,
                                 AttemptOutcome.SUCCESS)
                )
                tracker.mark_seen(event.id)
                return MessageState.ACKED

            if not error.is_retryable:
                attempts.append(
                    self._record(event, handler_id, attempt_number, dispatched_at,
                                 AttemptOutcome.FATAL_FAILURE, error.reason)
                )
                await self._dead_letter(
                    message, event, handler_id, f"fatal: {error.reason}", attempts
                )
                return MessageState.DEAD_LETTERED

            if attempt_number >= max_attempts:
                attempts.append(
                    self._record(event, handler_id, attempt_number, dispatched_at,
                                 AttemptOutcome.RETRYABLE_FAILURE, error.reason)
                )
                await self._dead_letter(
                    message,
                    event,
                    handler_id,
                    f"retries exhausted after {attempt_number} attempts: {error.reason}",
                    attempts,
                )
                return MessageState.DEAD_LETTERED

            delay = backoff.next_delay()
            attempts.append(
                self._record(event, handler_id, attempt_number, dispatched_at,
                             AttemptOutcome.RETRYABLE_FAILURE, error.reason, delay)
            )
            self._trace(message, MessageState.RETRY_SCHEDULED, f"{handler_id} in {delay:.3f}s")
            logger.warning(
                "Handler %s failed on %s (attempt %d/%d), retrying in %.2fs: %s",
                handler_id,
                event.id,
                attempt_number,
                max_attempts,
                delay,
                error.reason,
            )
            if not await self._sleep(delay):
                await self._dead_letter(
                    message,
                    event,
                    handler_id,
                    f"shutdown with retry pending after {attempt_number} attempts: {error.reason}",
                    attempts,
                )
                return MessageState.DEAD_LETTERED
        raise AssertionError("unreachable")

    async def _invoke(self, subscription: Subscription, event: Event) -> HandlerError | None:
        """Call the handler and normalize its report. Exceptions count as retryable."""
        handler = subscription.handler
        try:
            if inspect.iscoroutinefunction(handler):
                result = await self._call_async(handler, event)
            else:
                result = await self._call_in_thread(subscription, event)
            if inspect.isawaitable(result):
                result = await result
        except _HandlerTimeout:
            return HandlerError.retryable(f"timed out after {self._handler_timeout}s")
        except Exception as e:
            logger.exception(
                "Handler %s raised on %s %s", subscription.handler_id, event.type.value, event.id
            )
            return HandlerError.retryable(f"{type(e).__name__}: {e}")
        if isinstance(result, HandlerError):
            return result
        return None

    async def _call_async(self, handler: Handler, event: Event) -> object:
        scope = asyncio.timeout(self._handler_timeout)
        try:
            async with scope:
                return await handler(event)
        except TimeoutError:
            if not scope.expired():
                raise
            raise _HandlerTimeout() from None

    async def _call_in_thread(self, subscription: Subscription, event: Event) -> object:
        call = asyncio.ensure_future(asyncio.to_thread(subscription.handler, event))
        scope = asyncio.timeout(self._handler_timeout)
        try:
            async with scope:
                return await asyncio.shield(call)
        except TimeoutError:
            if not scope.expired():
                raise
            logger.warning(
                "Handler %s timed out on %s; waiting for its thread before retrying",
                subscription.handler_id,
                event.id,
            )
            await asyncio.gather(call, return_exceptions=True)
            raise _HandlerTimeout() from None

    def _record(
        self,
        event: Event,
        handler_id: str,
        attempt_number: int,
        dispatched_at: datetime,
        outcome: AttemptOutcome,
        detail: str = "",
        retry_delay: float | None = None,
    ) -> DeliveryAttempt:
        attempt = DeliveryAttempt(
            event_id=event.id,
            handler_id=handler_id,
            attempt_number=attempt_number,
            dispatched_at=dispatched_at,
            outcome=outcome,
            detail=detail,
            retry_delay=retry_delay,
        )
        self._collector.record_attempt(attempt)
        return attempt

    async def _dead_letter(
        self,
        message: BrokerMessage,
        event: Event | None,
        handler_id: str | None,
        reason: str,
        attempts: list[DeliveryAttempt],
    ) -> None:
        entry = DeadLetterEntry(
            reason=reason,
            raw=message.data,
            event=event,
            handler_id=handler_id,
            attempts=tuple(attempts),
            topic=message.topic,
            partition=message.partition,
            offset=message.offset,
            dead_lettered_at=_utcnow(),
        )
        await self._dead_letters.append(entry)
        logger.error(
            "Dead-lettered %s[%d]@%d event=%s handler=%s attempts=%d: %s",
            message.topic,
            message.partition,
            message.offset,
            event.id if event else "-",
            handler_id or "-",
            len(attempts),
            reason,
        )
