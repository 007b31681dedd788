"""Entry point for a notification consumer process: broker -> dispatcher -> handlers."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from notifier.broker import BrokerClient, InMemoryBroker, SqliteBroker
from notifier.dead_letter import DeadLetterSink, MemoryDeadLetterSink, SqliteDeadLetterSink
from notifier.dispatcher import Dispatcher, RetryPolicy
from notifier.events.models import DeliveryOrder
from notifier.events.payloads import log_patient_event
from notifier.events.types import PATIENT_EVENTS
from notifier.logging_config import setup_logging
from notifier.observability import Collector
from notifier.publisher import Publisher
from notifier.settings import get_setting, load_settings

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def build_broker(settings: dict[str, Any], root: Path = _PROJECT_ROOT) -> BrokerClient:
    cfg = settings.get("broker", {})
    backend = cfg.get("backend", "sqlite")
    partitions = int(cfg.get("partitions", 4))
    if backend == "memory":
        return InMemoryBroker(partitions=partitions)
    if backend == "sqlite":
        return SqliteBroker(
            db_path=root / cfg.get("db_path", "data/broker.db"),
            partitions=partitions,
            busy_timeout=int(cfg.get("busy_timeout", 5000)),
        )
    raise ValueError(f"unknown broker backend: {backend!r}")


def build_dead_letter_sink(settings: dict[str, Any], root: Path = _PROJECT_ROOT) -> DeadLetterSink:
    cfg = settings.get("dead_letter", {})
    backend = cfg.get("backend", "sqlite")
    if backend == "memory":
        return MemoryDeadLetterSink()
    if backend == "sqlite":
        return SqliteDeadLetterSink(root / cfg.get("db_path", "data/dead_letter.db"))
    raise ValueError(f"unknown dead-letter backend: {backend!r}")


def build_publisher(
    settings: dict[str, Any], broker: BrokerClient, collector: Collector
) -> Publisher:
    return Publisher(
        broker=broker,
        topic=get_setting(settings, "topics.events", "patient"),
        collector=collector,
        source=get_setting(settings, "publisher.source", ""),
        schema_version=int(get_setting(settings, "publisher.schema_version", 2)),
    )


def build_dispatcher(
    settings: dict[str, Any],
    broker: BrokerClient,
    collector: Collector,
    dead_letters: DeadLetterSink,
) -> Dispatcher:
    retry_cfg = settings.get("retry", {})
    reconnect_cfg = settings.get("reconnect", {})
    handler_timeout = get_setting(settings, "consumer.handler_timeout")
    return Dispatcher(
        broker=broker,
        topics=[get_setting(settings, "topics.events", "patient")],
        group_id=get_setting(settings, "consumer.group_id", "notification-service-group"),
        collector=collector,
        dead_letters=dead_letters,
        retry=RetryPolicy(
            max_attempts=int(retry_cfg.get("max_attempts", 5)),
            base_delay=float(retry_cfg.get("base_delay", 0.5)),
            max_delay=float(retry_cfg.get("max_delay", 30.0)),
            jitter_ratio=float(retry_cfg.get("jitter_ratio", 0.1)),
        ),
        reconnect=RetryPolicy(
            base_delay=float(reconnect_cfg.get("base_delay", 0.5)),
            max_delay=float(reconnect_cfg.get("max_delay", 10.0)),
        ),
        poll_timeout=float(get_setting(settings, "consumer.poll_timeout", 1.0)),
        idempotency_capacity=int(get_setting(settings, "consumer.idempotency_capacity", 10000)),
        handler_timeout=float(handler_timeout) if handler_timeout is not None else None,
    )


async def main_async() -> None:
    """Bootstrap: settings -> logging -> broker/sink -> dispatcher -> wait for signal."""
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    collector = Collector()
    broker = build_broker(settings)
    dead_letters = build_dead_letter_sink(settings)
    dispatcher = build_dispatcher(settings, broker, collector, dead_letters)
    dispatcher.register_handler(
        PATIENT_EVENTS, log_patient_event, DeliveryOrder.PER_SUBJECT, "patient-log"
    )

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt handled in main()

    await dispatcher.start()
    try:
        await shutdown_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        logger.info("Shutting down notifier")
        await dispatcher.stop(grace=float(get_setting(settings, "consumer.shutdown_grace", 10.0)))
        await broker.close()
        if isinstance(dead_letters, SqliteDeadLetterSink):
            await dead_letters.close()


def main() -> None:
    """Synchronous entry for the notifier process."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass


__all__ = [
    "build_broker",
    "build_dead_letter_sink",
    "build_dispatcher",
    "build_publisher",
    "main",
]
