import asyncio
import logging

from celery.signals import worker_process_init

import lastmile.models  # noqa: F401  # ensures Models are registered
from lastmile.core.config import settings
from lastmile.core.db import make_session_factory
from lastmile.core.logging import configure_logging
from lastmile.core.telemetry import setup_tracing
from lastmile.services.callback_http import CallbackHttpClient
from lastmile.services.callbacks import deliver_callback as deliver_callback_attempt
from lastmile.services.events import process_outbox_event as process_outbox_event_row
from worker.celery_app import celery


log = logging.getLogger(__name__)


@worker_process_init.connect
def _init_worker(**_kwargs) -> None:
    configure_logging()
    setup_tracing(f"{settings.service_name}-worker")


async def _process_outbox_event(outbox_id: str, lease_id: str) -> None:
    engine, Session = make_session_factory()
    try:
        async with Session() as db:
            await process_outbox_event_row(db, outbox_id, lease_id)
    finally:
        await engine.dispose()


async def _deliver_callback(callback_id: str, lease_id: str) -> str:
    engine, Session = make_session_factory()
    try:
        async with Session() as db, CallbackHttpClient() as http:
            outcome = await deliver_callback_attempt(db, callback_id, lease_id, http=http)
            await db.commit()
            return outcome
    finally:
        await engine.dispose()


@celery.task(name="worker.tasks.process_outbox_event", bind=True, max_retries=5)
def process_outbox_event(self, outbox_id: str, lease_id: str) -> None:
    asyncio.run(_process_outbox_event(outbox_id, lease_id))


@celery.task(name="worker.tasks.deliver_callback", bind=True)
def deliver_callback(self, callback_id: str, lease_id: str) -> str:
    # no Celery-level retries: the next attempt is scheduled on the row and picked up by the dispatcher
    outcome = asyncio.run(_deliver_callback(callback_id, lease_id))
    log.debug("worker: deliver_callback callback_id=%s outcome=%s", callback_id, outcome)
    return outcome
