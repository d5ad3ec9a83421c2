"""
Reconciliation Service — notification dispatcher

Side effects run only after the aggregate update has committed. Each one
is an explicit task inside an isolation boundary: bounded by a timeout,
any failure logged with the aggregate ids and turned into a FAILED step.
The caller awaits every task before acknowledging, so nothing is left
running once the response is sent.
"""

import asyncio
import logging
from collections.abc import Awaitable
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import commands
from .aggregate import OrderAggregate, ReturnAggregate
from .collaborators import EmailSender, SendResult
from .exceptions import CollaboratorError

logger = logging.getLogger(__name__)


async def isolated(name: str, coro: Awaitable, timeout: float | None, **context) -> dict:
    """
    Run one side effect; never raises.

    Returns a step entry {"task", "status", "timestamp", ...} in the same
    shape the handlers collect into their outcome.
    """
    step = {
        "task": name,
        "status": "EXECUTING",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **context,
    }
    try:
        result = await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Side effect %s timed out after %ss %s", name, timeout, _fmt(context))
        step.update(status="FAILED", error=f"timed out after {timeout}s")
        return step
    except Exception as e:
        logger.error("Side effect %s failed %s: %s", name, _fmt(context), e, exc_info=True)
        step.update(status="FAILED", error=f"{type(e).__name__}: {e}")
        return step
    step["status"] = "COMPLETED"
    if result is not None:
        step["result"] = result
    return step


def _fmt(context: dict) -> str:
    return " ".join(f"{k}={v}" for k, v in context.items())


def _money(amount: float) -> str:
    return f"{amount:.2f}"


class NotificationDispatcher:
    """One method per email the reconciler sends."""

    def __init__(self, email_sender: EmailSender, session_factory: sessionmaker) -> None:
        self.sender = email_sender
        self.sessions = session_factory

    async def order_confirmation(self, order: OrderAggregate) -> str | None:
        return await self._send(
            "order_confirmation",
            order.email,
            {
                "order_id": order.id,
                "customer_name": order.customer_name,
                "total": _money(order.total),
                "items": [
                    {
                        "product_name": i.product_name,
                        "quantity": i.quantity,
                        "unit_price": _money(i.unit_price),
                        "presale": i.is_presale,
                    }
                    for i in order.items
                ],
            },
            order_id=order.id,
        )

    async def payment_failed(self, order: OrderAggregate, reason: str) -> str | None:
        return await self._send(
            "payment_failed",
            order.email,
            {"order_id": order.id, "customer_name": order.customer_name, "reason": reason},
            order_id=order.id,
        )

    async def label_payment_received(
        self, ret: ReturnAggregate, order: OrderAggregate
    ) -> str | None:
        return await self._send(
            "return_label_payment_received",
            order.email,
            {"order_id": order.id, "return_id": ret.id, "customer_name": order.customer_name},
            order_id=order.id,
            return_id=ret.id,
        )

    async def label_ready(self, ret: ReturnAggregate, order: OrderAggregate) -> str | None:
        return await self._send(
            "return_label_ready",
            order.email,
            {
                "order_id": order.id,
                "return_id": ret.id,
                "customer_name": order.customer_name,
                "label_url": ret.return_label_url,
                "tracking_code": ret.return_tracking_code,
                "tracking_url": ret.return_tracking_url,
            },
            order_id=order.id,
            return_id=ret.id,
        )

    async def return_refunded(self, ret: ReturnAggregate, order: OrderAggregate) -> str | None:
        return await self._send(
            "return_refunded",
            order.email,
            {"order_id": order.id, "return_id": ret.id, "customer_name": order.customer_name},
            order_id=order.id,
            return_id=ret.id,
        )

    async def order_shipped(
        self, order: OrderAggregate, tracking_code: str | None, tracking_url: str | None
    ) -> str | None:
        return await self._send(
            "order_shipped",
            order.email,
            {
                "order_id": order.id,
                "customer_name": order.customer_name,
                "tracking_code": tracking_code,
                "tracking_url": tracking_url,
            },
            order_id=order.id,
        )

    async def order_delivered(self, order: OrderAggregate) -> str | None:
        return await self._send(
            "order_delivered",
            order.email,
            {"order_id": order.id, "customer_name": order.customer_name},
            order_id=order.id,
        )

    async def _send(
        self,
        kind: str,
        recipient: str,
        context: dict,
        order_id: str | None = None,
        return_id: str | None = None,
    ) -> str | None:
        result: SendResult = await self.sender.send(kind, recipient, context)
        await self._log(kind, recipient, result, order_id, return_id)
        if not result.success:
            raise CollaboratorError(f"{kind} email to {recipient} failed: {result.error}")
        logger.info("Sent %s email order_id=%s return_id=%s", kind, order_id, return_id)
        return result.id

    async def _log(self, kind, recipient, result, order_id, return_id) -> None:
        try:
            async with self.sessions() as session:
                await commands.append_email_log(
                    session,
                    email_type=kind,
                    recipient=recipient,
                    status="sent" if result.success else "failed",
                    now=datetime.now(timezone.utc),
                    order_id=order_id,
                    return_id=return_id,
                    provider_id=result.id,
                    error=result.error,
                )
        except SQLAlchemyError:
            logger.warning(
                "Email log write failed kind=%s order_id=%s return_id=%s",
                kind, order_id, return_id, exc_info=True,
            )
