"""Exception taxonomy for the sync core.

Ingress errors map to HTTP status codes at the webhook boundary. Remote
errors carry a ``retryable`` flag that the queue processor uses to decide
between a backoff retry and a permanent failure.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync errors."""

    retryable: bool = False


# ── Ingress ──────────────────────────────────────────────────────────────────


class WebhookAuthenticationError(SyncError):
    """Missing or invalid webhook shared secret."""


class WebhookValidationError(SyncError):
    """Malformed webhook body, unsupported event type, or invalid values."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


# ── Source catalog ───────────────────────────────────────────────────────────


class EntityNotFoundError(SyncError):
    """No Source item matches the given id or code."""


class FamilyNotFoundError(SyncError):
    """No Source product (family) matches the given id."""


class LinkConflictError(SyncError):
    """The Remote record is already linked to a different Source item."""

    def __init__(self, remote_id: str, linked_entity_id: int | None = None) -> None:
        owner = f"item {linked_entity_id}" if linked_entity_id is not None else "another item"
        super().__init__(f"Remote record {remote_id} is already linked to {owner}")
        self.remote_id = remote_id
        self.linked_entity_id = linked_entity_id


class UnmappedEntityError(SyncError):
    """Source item has no link to a Remote record."""

    def __init__(self, entity_id: int) -> None:
        super().__init__(f"Item {entity_id} has no linked Remote record")
        self.entity_id = entity_id


# ── Queue ────────────────────────────────────────────────────────────────────


class JobNotFoundError(SyncError):
    """No sync job with the given id."""


class JobStateError(SyncError):
    """Requested transition is illegal for the job's current status."""


# ── Remote ───────────────────────────────────────────────────────────────────


class RemoteError(SyncError):
    """Base class for Remote ERP failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteTransientError(RemoteError):
    """Timeout, rate limit, or server-side failure; safe to retry later."""

    retryable = True


class RemoteRejectedError(RemoteError):
    """Remote refused the update (validation, unknown record)."""


class RemotePermissionError(RemoteError):
    """Credentials rejected by the Remote."""


class RemoteConfigurationError(RemoteError):
    """Requested channel or endpoint is not configured."""
