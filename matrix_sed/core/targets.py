"""
Target resolution: which earlier message does a command apply to?

Decision order for an incoming command message:
  1. Direct reply             -> the replied-to event.
  2. Thread reply with an     -> that event (set for genuine replies and for
     ``m.in_reply_to``            the thread's latest-message fallback alike).
  3. Thread reply without one -> nearest preceding message in the same thread.
  4. No relation              -> nearest preceding message in the room.

Explicit targets (1, 2) never fall through to the implicit lookups; a
referenced event that is not an original message resolves to None.
"""

import logging
from typing import Optional, Protocol

from matrix_sed.core.types import (
    DirectReply,
    MessageEvent,
    ThreadReply,
    TimelineEvent,
)

logger = logging.getLogger(__name__)

PREVIOUS_EVENT_WINDOW = 5


class RoomHistory(Protocol):
    async def get_event(self, room_id: str, event_id: str) -> TimelineEvent: ...

    async def events_before(
        self, room_id: str, event_id: str, limit: int,
    ) -> list[TimelineEvent]:
        """Events preceding *event_id*, nearest first."""
        ...


async def _fetch(history: RoomHistory, room_id: str, event_id: str) -> Optional[MessageEvent]:
    try:
        event = await history.get_event(room_id, event_id)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Could not fetch target event %s in %s: %s", event_id, room_id, exc)
        return None
    if isinstance(event, MessageEvent):
        return event
    logger.debug("Target %s in %s is not an original message", event_id, room_id)
    return None


async def _previous(
    history: RoomHistory, message: MessageEvent, thread_root: Optional[str] = None,
) -> Optional[MessageEvent]:
    try:
        before = await history.events_before(
            message.room_id, message.event_id, PREVIOUS_EVENT_WINDOW,
        )
    except Exception as exc:  # noqa: BLE001
        logger.debug("Could not fetch context for %s: %s", message.event_id, exc)
        return None

    for event in before:
        if thread_root is not None:
            in_thread = event.event_id == thread_root or (
                isinstance(event, MessageEvent) and event.thread_root == thread_root
            )
            if not in_thread:
                continue
        if isinstance(event, MessageEvent):
            return event
        if event.event_type == "m.room.message":
            # Nearest message is redacted or an edit: nothing to fix.
            return None
    return None


async def resolve(message: MessageEvent, history: RoomHistory) -> Optional[MessageEvent]:
    """Return the message *message*'s command targets, or None."""
    relation = message.relation

    if isinstance(relation, DirectReply):
        return await _fetch(history, message.room_id, relation.event_id)

    if isinstance(relation, ThreadReply):
        if relation.in_reply_to:
            return await _fetch(history, message.room_id, relation.in_reply_to)
        return await _previous(history, message, thread_root=relation.root_id)

    return await _previous(history, message)
