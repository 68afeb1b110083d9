from collections.abc import AsyncIterator

from lastmile.core.config import settings
from lastmile.services.callback_http import CallbackHttpClient
from lastmile.services.storage import LocalObjectStore, proof_store


async def get_callback_http() -> AsyncIterator[CallbackHttpClient]:
    async with CallbackHttpClient() as http:
        yield http


async def get_test_callback_http() -> AsyncIterator[CallbackHttpClient]:
    async with CallbackHttpClient(timeout_seconds=settings.test_callback_timeout_seconds) as http:
        yield http


def get_proof_store() -> LocalObjectStore:
    return proof_store()
