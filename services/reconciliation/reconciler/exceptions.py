"""
Reconciliation Service — error taxonomy

Only InvalidSignature ever reaches the event source as a failure.
Everything else is absorbed at the webhook boundary and surfaced
through logs and the diagnostics of the (still successful) response.
"""


class ReconcilerError(Exception):
    """Base class for reconciliation errors."""


class InvalidSignature(ReconcilerError):
    """The event could not be authenticated against the shared secret."""


class MalformedEvent(ReconcilerError):
    """Authentic body whose shape does not match its declared type."""


class StateUpdateFailed(ReconcilerError):
    """The store rejected a write to an aggregate. Needs manual review."""

    def __init__(self, aggregate_type: str, aggregate_id: str, detail: str) -> None:
        super().__init__(f"{aggregate_type} {aggregate_id}: {detail}")
        self.aggregate_type = aggregate_type
        self.aggregate_id = aggregate_id
        self.detail = detail


class CollaboratorError(ReconcilerError):
    """An outbound collaborator (email, label) reported a failure."""

