"""Remote adapter abstract base class -- the only way the sync core talks to the ERP.

Every update names the channel it travels on. The interactive channel may
fire the Remote's change-notification hook; the programmatic channel is
guaranteed not to. The queue processor always pushes on the programmatic
channel (see LoopGuard.outbound_channel).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class UpdateChannel(str, Enum):
    """How an update reaches the Remote."""

    INTERACTIVE = "interactive"
    PROGRAMMATIC = "programmatic"


class RemoteUpdateResult(BaseModel):
    """Outcome of a successful Remote update."""

    remote_id: str
    channel: UpdateChannel
    updated_fields: list[str] = Field(default_factory=list)
    response: dict[str, Any] = Field(default_factory=dict)


class RemoteAdapter(ABC):
    """Abstract interface for Remote ERP record operations.

    Methods:
        update_record: Write mapped field values to one Remote record.
        get_record: Fetch the current field values of one Remote record.

    Implementations raise RemoteTransientError for retryable failures and
    another RemoteError subclass for permanent ones.
    """

    @abstractmethod
    async def update_record(
        self,
        remote_id: str,
        fields: dict[str, Any],
        channel: UpdateChannel,
    ) -> RemoteUpdateResult:
        """Update one Remote record on the given channel."""
        ...

    @abstractmethod
    async def get_record(self, remote_id: str) -> dict[str, Any] | None:
        """Fetch one Remote record, None if it does not exist."""
        ...

    async def close(self) -> None:
        """Release network resources (default: nothing to release)."""
        return None
