"""
Room event handlers

MembershipHandler  - joins rooms the bot is invited to, retrying with
                     exponential backoff in a detached task.
CommandHandler     - turns a ``sed s/…/…/`` message into a corrected notice
                     replying to the message it targets.

Both are registered on the connection by the sync loop and receive mautrix
events; everything past the entry points works on
:mod:`matrix_sed.core.types` events only.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from matrix_sed.core import commands, substitution, targets
from matrix_sed.core.diff import render_diff
from matrix_sed.core.replies import build_correction
from matrix_sed.core.types import (
    DeliveryFailed,
    JoinTransient,
    MalformedCommand,
    MessageEvent,
    TargetUnresolvable,
    TimelineEvent,
    parse_timeline_event,
)

logger = logging.getLogger(__name__)

JOIN_INITIAL_DELAY = 2      # seconds
JOIN_MAX_DELAY = 3600       # give up once the next delay would exceed this

TEXT_MSGTYPE = "m.text"


class MembershipHandler:
    """Auto-join on invite.

    Synapse can deliver an invite before the invited user is allowed to
    join (matrix-org/synapse#4345), so failed joins are retried with
    delays of 2, 4, 8, … seconds until the delay passes an hour.
    """

    def __init__(
        self,
        connection,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._conn = connection
        self._sleep = sleep
        self._background_tasks: set[asyncio.Task] = set()

    async def on_invite(self, evt) -> None:
        """InternalEventType.INVITE handler."""
        if str(evt.state_key) != self._conn.user_id:
            return
        room_id = str(evt.room_id)
        task = asyncio.create_task(self.join_with_backoff(room_id), name=f"autojoin-{room_id}")
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def join_with_backoff(self, room_id: str) -> bool:
        """Try to join *room_id* until it works or the backoff ceiling is hit."""
        logger.info("Autojoining room %s", room_id)
        delay = JOIN_INITIAL_DELAY
        while True:
            try:
                await self._conn.join(room_id)
            except JoinTransient as exc:
                logger.warning(
                    "Failed to join room %s (%s), retrying in %ds", room_id, exc, delay,
                )
                await self._sleep(delay)
                delay *= 2
                if delay > JOIN_MAX_DELAY:
                    logger.error("Can't join room %s (%s), giving up", room_id, exc)
                    return False
                continue
            logger.info("Successfully joined room %s", room_id)
            return True

    async def wait_idle(self) -> None:
        """Wait for all pending join tasks.  Used in tests and at shutdown."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)


class CommandHandler:
    """Applies substitution commands to the messages they target."""

    def __init__(self, connection) -> None:
        self._conn = connection

    async def on_message(self, evt) -> None:
        """EventType.ROOM_MESSAGE handler.  Never raises."""
        try:
            event = parse_timeline_event(evt.serialize(), str(evt.room_id))
            await self.handle(event)
        except Exception:  # noqa: BLE001
            logger.exception("Unhandled error processing %s", getattr(evt, "event_id", "?"))

    async def handle(self, event: TimelineEvent) -> Optional[str]:
        """Process one timeline event; returns the id of the sent correction."""
        if not isinstance(event, MessageEvent):
            return None
        self._conn.cache.add(event)

        if event.sender == self._conn.user_id or event.msgtype != TEXT_MSGTYPE:
            return None

        try:
            content = await self._correction_for(event)
        except MalformedCommand as exc:
            logger.debug("Ignoring malformed command in %s: %s", event.event_id, exc)
            return None
        except TargetUnresolvable as exc:
            logger.debug("No target for command %s: %s", event.event_id, exc)
            return None
        if content is None:
            return None

        try:
            event_id = await self._conn.send(event.room_id, content)
        except DeliveryFailed as exc:
            logger.error("Failed to send message to room %s: %s", event.room_id, exc)
            return None
        logger.info(
            "Corrected %s in %s for %s",
            content["m.relates_to"]["m.in_reply_to"]["event_id"], event.room_id, event.sender,
        )
        return event_id

    async def _correction_for(self, event: MessageEvent) -> Optional[dict]:
        command = commands.parse(event.body)
        if command is None:
            return None

        target = await targets.resolve(event, self._conn)
        if target is None:
            raise TargetUnresolvable(f"nothing to apply {command.pattern!r} to")

        old_text = commands.strip_reply_fallback(target.body)
        new_text = substitution.execute(command, old_text)
        return build_correction(
            target,
            new_text,
            render_diff(old_text, new_text),
            command_thread=event.thread_root,
        )
