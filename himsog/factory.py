import datetime as dt
from typing import Callable

from loguru import logger

from himsog.config import AppConfig, StoreAdapter
from himsog.scheduling.lifecycle import Clock, utc_now
from himsog.scheduling.service import SchedulingService
from himsog.store.adapters.memory import InMemorySchedulingStore
from himsog.store.adapters.sql import SqlSchedulingStore
from himsog.store.ports import AbstractSchedulingStore


def _build_memory(config: AppConfig) -> AbstractSchedulingStore:
    return InMemorySchedulingStore()


def _build_sql(config: AppConfig) -> AbstractSchedulingStore:
    return SqlSchedulingStore(config.store.database_url, echo=config.store.echo)


_BUILDERS: dict[StoreAdapter, Callable[[AppConfig], AbstractSchedulingStore]] = {
    StoreAdapter.MEMORY: _build_memory,
    StoreAdapter.SQL: _build_sql,
}


def build_store(config: AppConfig) -> AbstractSchedulingStore:
    """Build the appropriate scheduling store based on config."""
    adapter = config.store.adapter
    logger.info("Building scheduling store with adapter: {}", adapter.value)
    return _BUILDERS[adapter](config)


async def build_scheduling(config: AppConfig, *, clock: Clock = utc_now) -> SchedulingService:
    """Build a ready-to-use scheduling service, creating the SQL schema when configured to."""
    store = build_store(config)
    if isinstance(store, SqlSchedulingStore) and config.store.create_schema:
        await store.create_schema()

    return SchedulingService(
        store,
        utc_offset=config.scheduling.utc_offset,
        default_slot_duration_minutes=config.scheduling.default_slot_duration_minutes,
        no_show_grace=dt.timedelta(minutes=config.scheduling.no_show_grace_minutes),
        clock=clock,
    )
