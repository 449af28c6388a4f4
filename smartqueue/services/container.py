"""
Service wiring.

Builds the queue core from settings so the FastAPI app, the tests and any
worker process assemble exactly the same object graph.
"""

from dataclasses import dataclass

from smartqueue.config import Settings
from smartqueue.core.clock import Clock, SystemClock
from smartqueue.core.priority import PriorityScale
from smartqueue.repositories.base import QueueRepository
from smartqueue.repositories.memory_repository import InMemoryQueueRepository
from smartqueue.repositories.postgres_repository import PostgresQueueRepository
from smartqueue.services.locks import QueueLocks
from smartqueue.services.message_sinks import LoggingMessageSink, MessageSink, RedisMessageSink
from smartqueue.services.notification_dispatcher import NotificationDispatcher
from smartqueue.services.party_service import PartyService
from smartqueue.services.queue_engine import QueueEngine
from smartqueue.services.queue_notifier import QueueNotifier
from smartqueue.services.queue_orchestrator import QueueOrchestrator
from smartqueue.services.redis_client import fast_redis
from smartqueue.services.token_state_machine import TokenStateMachine


@dataclass
class QueueServices:
    repository: QueueRepository
    clock: Clock
    engine: QueueEngine
    notifier: QueueNotifier
    dispatcher: NotificationDispatcher
    orchestrator: QueueOrchestrator
    parties: PartyService


def build_repository(settings: Settings) -> QueueRepository:
    if settings.STORAGE_BACKEND == "postgres":
        return PostgresQueueRepository()
    if settings.STORAGE_BACKEND == "memory":
        return InMemoryQueueRepository()
    raise ValueError(f"Unknown STORAGE_BACKEND '{settings.STORAGE_BACKEND}'")


def build_sink(settings: Settings) -> MessageSink:
    if settings.NOTIFICATION_SINK == "redis":
        return RedisMessageSink(fast_redis, settings.NOTIFICATION_REDIS_KEY)
    if settings.NOTIFICATION_SINK == "log":
        return LoggingMessageSink()
    raise ValueError(f"Unknown NOTIFICATION_SINK '{settings.NOTIFICATION_SINK}'")


def build_services(
    settings: Settings,
    *,
    repository: QueueRepository | None = None,
    clock: Clock | None = None,
    sink: MessageSink | None = None,
) -> QueueServices:
    repository = repository or build_repository(settings)
    clock = clock or SystemClock(settings.SITE_TIMEZONE)
    sink = sink or build_sink(settings)

    scale = PriorityScale(settings.PRIORITY_SCORES)
    engine = QueueEngine(repository, clock, settings)
    notifier = QueueNotifier(repository, engine, sink, settings)
    dispatcher = NotificationDispatcher(settings.settling_delay_seconds())
    orchestrator = QueueOrchestrator(
        repository=repository,
        engine=engine,
        state_machine=TokenStateMachine(clock, scale),
        notifier=notifier,
        dispatcher=dispatcher,
        locks=QueueLocks(),
        clock=clock,
        scale=scale,
        settings=settings,
    )

    return QueueServices(
        repository=repository,
        clock=clock,
        engine=engine,
        notifier=notifier,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        parties=PartyService(repository, clock, settings),
    )
