"""Composition root: wires stores, collaborators, engine and scheduler.

The API process builds one runtime at startup. Celery tasks build a fresh
one per task (``campaign_runtime``) because each task runs in its own event
loop and an async DB engine cannot be shared across loops.

Usage from a worker task::

    async with campaign_runtime() as rt:
        await run_start_job(rt.engine, rt.flows, flow_id, subject_id, context)
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from campaign.engine import CampaignEngine
from campaign.event_log import EventLog
from campaign.jobs import JobQueue
from campaign.retry_strategies import RetryStrategy
from campaign.scheduler import Scheduler
from campaign.stores import DeferredTaskStore, FailedTaskStore, FlowStore, RunStore
from core.utils import utcnow
from db.database import create_db_engine, create_session_factory
from delivery.base import DeliveryProvider
from delivery.providers import build_delivery_provider
from notifications.publisher import NotificationPublisher, build_publisher


@dataclass
class CampaignRuntime:
    """Everything needed to process runs, bound to one session factory."""
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    flows: FlowStore
    runs: RunStore
    deferred: DeferredTaskStore
    failed_tasks: FailedTaskStore
    events: EventLog
    delivery: DeliveryProvider
    publisher: NotificationPublisher
    engine: CampaignEngine
    clock: Callable[[], datetime] = utcnow

    def build_scheduler(self, queue: JobQueue) -> Scheduler:
        return Scheduler(
            engine=self.engine,
            flows=self.flows,
            runs=self.runs,
            deferred=self.deferred,
            failed_tasks=self.failed_tasks,
            queue=queue,
            clock=self.clock,
            interval_seconds=self.settings.SCHEDULER_INTERVAL_SECONDS,
            batch_size=self.settings.SCHEDULER_BATCH_SIZE,
            max_retries=self.settings.DEFERRED_MAX_RETRIES,
            retry_strategy=deferred_retry_strategy(self.settings),
        )


def deferred_retry_strategy(settings: Settings) -> RetryStrategy:
    """Backoff for failed deferred tasks: 2, 4, 8 minutes by default."""
    return RetryStrategy.exponential(
        max_retries=settings.DEFERRED_MAX_RETRIES,
        base_delay=settings.DEFERRED_RETRY_BASE_SECONDS,
        max_delay=settings.DEFERRED_RETRY_BASE_SECONDS * 2 ** settings.DEFERRED_MAX_RETRIES,
    )


def job_retry_strategy(settings: Settings) -> RetryStrategy:
    """Backoff for start-run jobs run by the in-process queue."""
    return RetryStrategy.exponential(
        max_retries=settings.JOB_MAX_ATTEMPTS,
        base_delay=settings.JOB_BACKOFF_SECONDS,
        max_delay=settings.JOB_BACKOFF_MAX_SECONDS,
    )


def build_runtime(
    session_factory: async_sessionmaker[AsyncSession],
    delivery: DeliveryProvider,
    publisher: NotificationPublisher,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
) -> CampaignRuntime:
    settings = settings or get_settings()
    runs = RunStore(session_factory)
    deferred = DeferredTaskStore(session_factory)
    events = EventLog(session_factory)
    engine = CampaignEngine(
        runs=runs,
        deferred=deferred,
        events=events,
        delivery=delivery,
        publisher=publisher,
        clock=clock,
        max_steps=settings.MAX_STEPS_PER_JOB,
        lookback_days=settings.CONDITION_LOOKBACK_DAYS,
    )
    return CampaignRuntime(
        settings=settings,
        session_factory=session_factory,
        flows=FlowStore(session_factory),
        runs=runs,
        deferred=deferred,
        failed_tasks=FailedTaskStore(session_factory),
        events=events,
        delivery=delivery,
        publisher=publisher,
        engine=engine,
        clock=clock,
    )


@asynccontextmanager
async def campaign_runtime(
    settings: Optional[Settings] = None,
    db_engine: Optional[AsyncEngine] = None,
) -> AsyncIterator[CampaignRuntime]:
    """Runtime with its own DB engine and collaborators, closed on exit."""
    settings = settings or get_settings()
    owns_engine = db_engine is None
    db_engine = db_engine or create_db_engine(settings.DATABASE_URL)
    delivery = build_delivery_provider(settings)
    publisher = build_publisher(settings)
    try:
        yield build_runtime(create_session_factory(db_engine), delivery, publisher, settings)
    finally:
        await delivery.close()
        await publisher.close()
        if owns_engine:
            await db_engine.dispose()
