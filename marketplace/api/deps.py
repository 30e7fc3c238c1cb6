from __future__ import annotations

from functools import lru_cache
from typing import AsyncIterator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import settings
from marketplace.core.db import get_db
from marketplace.services.change_feed import ChangePublisher, RedisChangePublisher
from marketplace.services.container import Services, build_services
from marketplace.services.http_client import ServiceHttpClient
from marketplace.services.notifications import CeleryNotifier, Notifier
from marketplace.services.payment_gateway import PaymentGatewayClient, TransactionLookup
from marketplace.services.storage import LocalObjectStore, ObjectStore

__all__ = ["Services", "get_services", "get_change_publisher", "get_notifier", "get_object_store", "get_gateway"]


@lru_cache
def get_change_publisher() -> ChangePublisher:
    return RedisChangePublisher(settings.redis_url)


@lru_cache
def get_notifier() -> Notifier:
    return CeleryNotifier()


@lru_cache
def get_object_store() -> ObjectStore:
    return LocalObjectStore(settings.storage_dir)


async def get_gateway() -> AsyncIterator[TransactionLookup]:
    client = PaymentGatewayClient(ServiceHttpClient(timeout_seconds=10.0), api_url=settings.payments_api_url)
    try:
        yield client
    finally:
        await client.aclose()


async def get_services(
    db: AsyncSession = Depends(get_db),
    publisher: ChangePublisher = Depends(get_change_publisher),
    notifier: Notifier = Depends(get_notifier),
    object_store: ObjectStore = Depends(get_object_store),
    gateway: TransactionLookup = Depends(get_gateway),
) -> Services:
    return build_services(
        db,
        publisher=publisher,
        notifier=notifier,
        object_store=object_store,
        gateway=gateway,
    )
