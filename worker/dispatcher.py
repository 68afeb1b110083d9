import asyncio
import logging

from lastmile.core.config import settings
from lastmile.core.db import make_session_factory
from lastmile.core.logging import configure_logging
from lastmile.services.callback_queue import dispatch_due_callbacks
from lastmile.services.outbox_dispatcher import Enqueue, dispatch_outbox
from worker.celery_app import celery, send_task


log = logging.getLogger(__name__)


async def _tick(enqueue: Enqueue = send_task) -> tuple[int, int]:
    engine, Session = make_session_factory()
    try:
        async with Session() as db:
            events = await dispatch_outbox(db, enqueue)
        async with Session() as db:
            callbacks = await dispatch_due_callbacks(db, enqueue)
    finally:
        await engine.dispose()

    if events or callbacks:
        log.info("dispatcher: enqueued outbox=%d callbacks=%d", events, callbacks)
    return events, callbacks


async def main():
    configure_logging()
    celery.connection().ensure_connection(max_retries=3)

    log.info("dispatcher: started poll=%ss batch=%d", settings.dispatcher_poll_seconds, settings.dispatcher_batch_size)
    while True:
        try:
            await _tick()
        except Exception:
            log.exception("dispatcher: tick crashed")
        await asyncio.sleep(settings.dispatcher_poll_seconds)


if __name__ == "__main__":
    asyncio.run(main())
