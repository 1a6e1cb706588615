"""Wire settings into the scheduling services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schedbot.apps.bot.broker import InMemoryUpdateBroker, RedisUpdateBroker, UpdateBrokerProtocol
from schedbot.apps.bot.chat_client import ChatClient, HttpChatClient
from schedbot.apps.bot.coalescer import (
    InMemoryPendingUpdateStore,
    MessageUpdateCoalescer,
    MessageUpdateWorker,
    PendingUpdateStore,
    RedisPendingUpdateStore,
)
from schedbot.apps.bot.notifications import NotificationDispatcher
from schedbot.apps.bot.reminders import (
    ReminderSweep,
    ReminderSweepService,
    configure_reminder_sweep,
    create_scheduler,
)
from schedbot.apps.bot.votes import VoteCoordinator
from schedbot.core.db import configure_database, get_session_factory, init_models
from schedbot.core.logging import configure_logging
from schedbot.core.redis_factory import create_redis_client
from schedbot.core.settings import Settings, get_settings
from schedbot.domain.repositories import SqlScheduleStorage
from schedbot.domain.schedule_service import ScheduleService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    storage: SqlScheduleStorage
    chat: ChatClient
    broker: UpdateBrokerProtocol
    coalescer: MessageUpdateCoalescer
    worker: MessageUpdateWorker
    dispatcher: NotificationDispatcher
    schedules: ScheduleService
    votes: VoteCoordinator
    sweep: ReminderSweep


def _build_queue(settings: Settings) -> tuple[UpdateBrokerProtocol, PendingUpdateStore]:
    if settings.update_broker == "redis":
        redis = create_redis_client(settings.redis_url, component="updates")
        return RedisUpdateBroker(redis), RedisPendingUpdateStore(redis)
    return InMemoryUpdateBroker(), InMemoryPendingUpdateStore()


def build_services(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    chat: Optional[ChatClient] = None,
    broker: Optional[UpdateBrokerProtocol] = None,
    store: Optional[PendingUpdateStore] = None,
    scheduler: Optional[AsyncIOScheduler] = None,
) -> Services:
    """Assemble the service graph; explicit arguments override settings."""

    settings = settings or get_settings()
    storage = SqlScheduleStorage(session_factory or get_session_factory())
    if chat is None:
        chat = HttpChatClient(
            settings.chat_api_base,
            settings.chat_bot_token,
            timeout=settings.chat_http_timeout,
        )
    if broker is None or store is None:
        default_broker, default_store = _build_queue(settings)
        broker = broker or default_broker
        store = store or default_store

    coalescer = MessageUpdateCoalescer(
        broker,
        store,
        debounce_seconds=settings.update_debounce_seconds,
        max_attempts=settings.update_max_attempts,
    )
    worker = MessageUpdateWorker(
        broker,
        store,
        storage,
        chat,
        scheduler=scheduler,
        poll_interval=settings.update_poll_interval,
        claim_idle_seconds=settings.update_claim_idle_seconds,
        retry_base_delay=settings.update_retry_base_seconds,
        retry_max_delay=settings.update_retry_max_seconds,
        min_interval=settings.update_min_interval_seconds,
        window_seconds=settings.update_window_seconds,
        window_limit=settings.update_window_limit,
    )
    dispatcher = NotificationDispatcher(chat)
    schedules = ScheduleService(
        storage,
        updates=coalescer,
        notifier=dispatcher,
        messages=chat,
        default_timings=settings.default_reminder_timings,
    )
    votes = VoteCoordinator(storage, updates=coalescer)
    sweep = ReminderSweep(
        storage,
        schedules,
        dispatcher,
        batch_size=settings.reminder_batch_size,
        lookback_seconds=settings.reminder_lookback_seconds,
        lookahead_seconds=settings.reminder_lookahead_seconds,
        skip_stale=settings.reminder_skip_stale,
    )
    return Services(
        storage=storage,
        chat=chat,
        broker=broker,
        coalescer=coalescer,
        worker=worker,
        dispatcher=dispatcher,
        schedules=schedules,
        votes=votes,
        sweep=sweep,
    )


async def start_background(settings: Optional[Settings] = None) -> Services:
    """Configure logging and the database, then start the sweep and update worker."""

    settings = settings or get_settings()
    configure_logging(settings)
    engine = configure_database(settings=settings)
    await init_models(engine)

    scheduler = create_scheduler()
    services = build_services(settings, scheduler=scheduler)
    await services.broker.start()
    configure_reminder_sweep(
        ReminderSweepService(
            services.sweep,
            scheduler=scheduler,
            interval_seconds=settings.reminder_sweep_interval,
        )
    )
    services.worker.start()
    logger.info(
        "bootstrap.started",
        extra={
            "environment": settings.environment,
            "update_broker": settings.update_broker,
            "sweep_interval": settings.reminder_sweep_interval,
        },
    )
    return services


__all__ = ["Services", "build_services", "start_background"]
