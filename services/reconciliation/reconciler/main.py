"""
Reconciliation Service — FastAPI entry point

Receives payment-provider and courier webhooks and reconciles them
against orders and return requests. Every delivery is acknowledged;
only a failed signature check is answered with an error.

  POST /webhooks/stripe                  payment provider events
  POST /webhooks/carrier                 courier parcel updates
  POST /admin/returns/{id}/label         re-drive label generation
  POST /admin/settings/invalidate        drop cached site settings
  GET  /events, /events/{aggregate_id}   delivery log (debugging)

Run with:
    uvicorn reconciler.main:app --host 0.0.0.0 --port 8000
or the installed `reconciliation-service` script.
"""

import hmac
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from . import event_store
from .carrier import verify_carrier_signature
from .collaborators import EmailSender, LabelGenerator
from .config import Settings, configure_logging
from .exceptions import StateUpdateFailed
from .labels import ALREADY_GENERATED, GENERATED, IN_PROGRESS, NOT_FOUND, NOT_READY
from .verifier import verify
from .wiring import Services, build_services

LABEL_STATUS_CODES = {
    GENERATED: 200,
    ALREADY_GENERATED: 200,
    NOT_FOUND: 404,
    NOT_READY: 409,
    IN_PROGRESS: 409,
}


def create_app(
    settings: Settings | None = None,
    engine: AsyncEngine | None = None,
    redis: aioredis.Redis | None = None,
    email_sender: EmailSender | None = None,
    label_generator: LabelGenerator | None = None,
) -> FastAPI:
    """
    Without arguments, everything is built from the environment when the
    lifespan starts. With an engine (tests), the services are built right
    away so the app works without running the lifespan.
    """
    prebuilt: Services | None = None
    if engine is not None:
        prebuilt = build_services(
            settings or Settings(database_url=str(engine.url)),
            engine,
            redis,
            email_sender,
            label_generator,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if prebuilt is not None:
            yield
            return
        env = Settings.from_env()
        configure_logging(env.log_level)
        services = build_services(
            env,
            create_async_engine(env.database_url, echo=False),
            aioredis.from_url(env.redis_url, decode_responses=True),
        )
        app.state.services = services
        yield
        await services.aclose()

    app = FastAPI(title="Reconciliation Service", lifespan=lifespan)
    if prebuilt is not None:
        app.state.services = prebuilt

    # ── Webhook Endpoints ────────────────────────

    @app.post("/webhooks/stripe")
    async def stripe_webhook(
        request: Request,
        stripe_signature: str | None = Header(None),
        services: Services = Depends(get_services),
    ):
        payload = await request.body()
        return await services.acknowledgment.acknowledge(
            "stripe",
            lambda: verify(payload, stripe_signature, services.settings.stripe_webhook_secret),
            services.reconciler.handle,
        )

    @app.post("/webhooks/carrier")
    async def carrier_webhook(
        request: Request,
        sendcloud_signature: str | None = Header(None),
        services: Services = Depends(get_services),
    ):
        payload = await request.body()
        return await services.acknowledgment.acknowledge(
            "carrier",
            lambda: verify_carrier_signature(
                payload, sendcloud_signature, services.settings.carrier_webhook_secret
            ),
            services.carrier.handle,
            rejected_status=401,
        )

    # ── Admin Endpoints ──────────────────────────

    @app.post("/admin/returns/{return_id}/label", dependencies=[Depends(require_internal_auth)])
    async def admin_generate_label(return_id: str, services: Services = Depends(get_services)):
        """Re-drive label generation for a return whose label payment is recorded."""
        try:
            attempt = await services.labels.generate(return_id)
        except StateUpdateFailed as e:
            raise HTTPException(500, str(e))
        status_code = LABEL_STATUS_CODES.get(attempt.status, 502)
        if status_code != 200:
            raise HTTPException(status_code, attempt.error or attempt.status)
        return attempt.as_dict()

    @app.post("/admin/settings/invalidate", dependencies=[Depends(require_internal_auth)])
    async def admin_invalidate_settings(
        req: InvalidateSettingsRequest | None = None,
        services: Services = Depends(get_services),
    ):
        key = req.key if req else None
        services.settings_cache.invalidate(key)
        return {"invalidated": key or "all"}

    # ── Debug Endpoints ──────────────────────────

    @app.get("/events")
    async def list_deliveries(limit: int = 100, services: Services = Depends(get_services)):
        """Most recent webhook deliveries (debugging)."""
        async with services.session_factory() as session:
            return await event_store.load_all_deliveries(session, limit)

    @app.get("/events/{aggregate_id}")
    async def aggregate_deliveries(aggregate_id: str, services: Services = Depends(get_services)):
        async with services.session_factory() as session:
            return await event_store.load_deliveries(session, aggregate_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "reconciliation-service"}

    return app


# ── Dependencies / Request Models ────────────────


class InvalidateSettingsRequest(BaseModel):
    key: str | None = None


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_internal_auth(
    authorization: str | None = Header(None),
    services: Services = Depends(get_services),
) -> None:
    secret = services.settings.internal_api_secret
    scheme, _, token = (authorization or "").partition(" ")
    if not secret or scheme.lower() != "bearer" or not hmac.compare_digest(token, secret):
        raise HTTPException(401, "Unauthorized")


app = create_app()


def run() -> None:
    uvicorn.run(
        "reconciler.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )
