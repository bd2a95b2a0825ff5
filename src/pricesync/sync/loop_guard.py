"""Loop guard -- breaks the Remote -> Source -> Remote feedback cycle.

Two mechanisms:
1. Outbound: every push from the queue processor uses the programmatic
   update channel, which the Remote never turns into a webhook.
2. Inbound: a delivery is accepted and skipped when the record carries the
   business skip flag, or when it reports our own programmatic origin
   (in case a Remote deployment forwards programmatic edits anyway).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from src.pricesync.sync.adapters.remote import UpdateChannel
from src.pricesync.sync.schemas import WebhookEvent

logger = structlog.get_logger(__name__)

SKIP_FLAG_REASON = "pricing sync disabled for item"
OWN_ORIGIN_REASON = "change originated from pricesync"

_TRUE_VALUES = {"t", "true", "1", "yes", "y", "on"}


def parse_flag(value: Any) -> bool:
    """Interpret Remote checkbox values ("T"/"F", booleans, 1/0) as a bool."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class SuppressionDecision:
    suppress: bool
    reason: str | None = None


class LoopGuard:
    """Decides whether an inbound event must be skipped, and which channel outbound pushes use.

    Args:
        programmatic_origin: Origin marker the Remote echoes back for updates
            made through our programmatic channel. None disables the check.
    """

    def __init__(self, programmatic_origin: str | None = None) -> None:
        self._programmatic_origin = programmatic_origin or None

    def should_suppress(self, event: WebhookEvent) -> SuppressionDecision:
        if event.skip_flag:
            return SuppressionDecision(True, SKIP_FLAG_REASON)
        if self._programmatic_origin and event.origin == self._programmatic_origin:
            logger.info(
                "loop_guard.own_origin_suppressed",
                item_code=event.remote_item_code,
                origin=event.origin,
            )
            return SuppressionDecision(True, OWN_ORIGIN_REASON)
        return SuppressionDecision(False)

    @staticmethod
    def outbound_channel() -> UpdateChannel:
        """The channel every queue-driven push must use."""
        return UpdateChannel.PROGRAMMATIC
