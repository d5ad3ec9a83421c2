"""
Reconciliation Service — component wiring

Builds the object graph once per process. Tests pass their own email
sender, label generator and Redis double; production builds the HTTP
adapters on a shared httpx client.
"""

from dataclasses import dataclass

import httpx
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .acknowledgment import AcknowledgmentPolicy
from .carrier import CarrierReconciler
from .collaborators import EmailSender, HttpEmailSender, HttpLabelGenerator, LabelGenerator
from .config import Settings
from .correlation import CorrelationMemo, CorrelationResolver
from .engine import ReconciliationEngine
from .inventory import InventoryAdjuster
from .labels import LabelService
from .notifications import NotificationDispatcher
from .settings_cache import SettingsCache


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: sessionmaker
    redis: aioredis.Redis | None
    http_client: httpx.AsyncClient | None
    settings_cache: SettingsCache
    reconciler: ReconciliationEngine
    carrier: CarrierReconciler
    labels: LabelService
    acknowledgment: AcknowledgmentPolicy

    async def aclose(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()


def build_services(
    settings: Settings,
    engine: AsyncEngine,
    redis: aioredis.Redis | None = None,
    email_sender: EmailSender | None = None,
    label_generator: LabelGenerator | None = None,
) -> Services:
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    http_client = None
    if email_sender is None or label_generator is None:
        http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    settings_cache = SettingsCache(session_factory, settings.settings_cache_ttl_seconds)

    if email_sender is None:
        email_sender = HttpEmailSender(
            http_client,
            settings.email_service_url or "",
            settings.email_api_key,
            settings.email_from,
        )
    if label_generator is None:
        label_generator = HttpLabelGenerator(
            http_client,
            settings.label_service_url or "",
            settings.label_public_key,
            settings.label_secret_key,
            settings_cache,
        )

    notifier = NotificationDispatcher(email_sender, session_factory)
    labels = LabelService(
        session_factory, label_generator, notifier, settings.http_timeout_seconds
    )
    resolver = CorrelationResolver(
        session_factory,
        CorrelationMemo(redis, settings.correlation_memo_ttl_seconds),
        email_fallback=settings.email_fallback_enabled,
    )
    reconciler = ReconciliationEngine(
        session_factory,
        resolver,
        InventoryAdjuster(session_factory),
        notifier,
        labels,
        settings.notify_timeout_seconds,
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        redis=redis,
        http_client=http_client,
        settings_cache=settings_cache,
        reconciler=reconciler,
        carrier=CarrierReconciler(session_factory, notifier, settings.notify_timeout_seconds),
        labels=labels,
        acknowledgment=AcknowledgmentPolicy(session_factory),
    )
