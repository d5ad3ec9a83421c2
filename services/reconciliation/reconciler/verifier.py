"""
Reconciliation Service — event verification

Signature checking is delegated to the provider SDK. A bad signature is
the only failure ever reported back to the event source (HTTP 400).
"""

import logging

import stripe

from .events import ProviderEvent, UnknownEvent, parse_event
from .exceptions import InvalidSignature

logger = logging.getLogger(__name__)


def verify(
    payload: bytes,
    signature: str | None,
    secret: str | None,
) -> ProviderEvent | UnknownEvent:
    """
    Authenticate the raw body against the shared secret and return
    the typed event.

    Raises InvalidSignature when the header or the secret is missing, or
    when the provider SDK rejects the signature. An authentic body that
    does not fit its schema raises MalformedEvent instead.
    """
    if not signature or not secret:
        raise InvalidSignature("Missing signature or webhook secret")

    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise InvalidSignature(str(e)) from e
    except ValueError as e:
        # The SDK parses before checking; a non-JSON body is never trusted.
        logger.warning("Webhook body rejected: %s", e)
        raise InvalidSignature(f"Invalid payload: {e}") from e

    return parse_event(payload)
