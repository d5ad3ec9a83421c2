"""
Reconciliation Service — acknowledgment policy

The event source retries, and eventually disables, an endpoint that
keeps failing. So every delivery is answered 200 with diagnostics,
except one whose signature did not verify. Unexpected exceptions are
logged with their stack trace here and still acknowledged.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from . import event_store
from .engine import FAILED, MALFORMED, Outcome
from .exceptions import InvalidSignature, MalformedEvent
from .notifications import isolated

logger = logging.getLogger(__name__)


class AcknowledgmentPolicy:
    def __init__(self, session_factory: sessionmaker, log_timeout: float = 5.0) -> None:
        self.sessions = session_factory
        self.log_timeout = log_timeout

    async def acknowledge(
        self,
        source: str,
        verify: Callable[[], Any],
        handle: Callable[[Any], Awaitable[Outcome]],
        rejected_status: int = 400,
    ) -> JSONResponse:
        """
        verify() authenticates and parses the delivery; handle(event)
        reconciles it. Only InvalidSignature from verify() turns into a
        non-2xx answer.
        """
        event = None
        try:
            event = verify()
            outcome = await handle(event)
        except InvalidSignature as e:
            logger.warning("Rejected %s delivery: %s", source, e)
            await self._record(
                source,
                Outcome(event_id=None, event_type=None, result="invalid_signature", detail=str(e)),
            )
            return JSONResponse(
                status_code=rejected_status,
                content={"received": False, "error": str(e)},
            )
        except MalformedEvent as e:
            logger.error("Malformed %s delivery acknowledged: %s", source, e)
            outcome = Outcome(event_id=None, event_type=None, result=MALFORMED, detail=str(e))
        except Exception as e:
            event_id = getattr(event, "id", None)
            logger.critical(
                "Unhandled error reconciling %s event_id=%s", source, event_id, exc_info=True
            )
            outcome = Outcome(
                event_id=event_id,
                event_type=getattr(event, "type", None),
                result=FAILED,
                detail=f"{type(e).__name__}: {e}",
            )

        await self._record(source, outcome)
        return JSONResponse(status_code=200, content={"received": True, **outcome.as_dict()})

    async def _record(self, source: str, outcome: Outcome) -> None:
        async def append():
            async with self.sessions() as session:
                return await event_store.append_delivery(session, source, outcome.as_dict())

        await isolated(
            "record_delivery",
            append(),
            self.log_timeout,
            source=source,
            event_id=outcome.event_id,
        )
