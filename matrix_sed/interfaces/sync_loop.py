"""
Sync loop

Drives the connection from startup until shutdown:

  BOOTSTRAPPING  register the invite handler, upload a lazy-loading filter
  CATCHING_UP    one short sync from the stored token; invites in it are
                 handled, old messages are not; its token is persisted
  (cleanup)      optionally delete every other device of the account
  STEADY_STATE   register the command handler, long-poll forever; the token
                 of each round is persisted only after the round's handlers
                 have finished
  TERMINATED     stop() was called
  CRASHED        a non-recoverable error (expired token, failed cleanup)
                 was raised to the caller

A failed round is logged and retried with the same token, so every event
is delivered at least once.
"""

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional

from matrix_sed.core.types import SyncTransient
from matrix_sed.interfaces.handlers import CommandHandler, MembershipHandler

logger = logging.getLogger(__name__)

LAZY_LOAD_FILTER = {
    "room": {
        "state": {"lazy_load_members": True},
        "timeline": {"lazy_load_members": True},
    },
}

CATCH_UP_TIMEOUT_MS = 0
SYNC_TIMEOUT_MS = 30_000
SYNC_RETRY_DELAY = 5  # seconds


class SyncState(enum.Enum):
    BOOTSTRAPPING = "bootstrapping"
    CATCHING_UP = "catching_up"
    STEADY_STATE = "steady_state"
    TERMINATED = "terminated"
    CRASHED = "crashed"


class SyncLoop:
    """
    Runs as an asyncio task.  After construction, call ``run()``.
    """

    def __init__(
        self,
        connection,
        session,
        *,
        delete_other_devices: bool = False,
        tolerate_device_cleanup_failure: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._conn = connection
        self._session = session
        self._delete_other_devices = delete_other_devices
        self._tolerate_cleanup_failure = tolerate_device_cleanup_failure
        self._sleep = sleep
        self._running = False
        self.state = SyncState.BOOTSTRAPPING
        self.membership = MembershipHandler(connection, sleep=sleep)
        self.commands = CommandHandler(connection)

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def run(self, sync_token: Optional[str] = None) -> None:
        self._running = True
        try:
            filter_id = await self._bootstrap()
            sync_token = await self._catch_up(sync_token, filter_id)
            if self._delete_other_devices:
                await self._cleanup_devices()
            await self._steady_state(sync_token, filter_id)
        except asyncio.CancelledError:
            self.state = SyncState.TERMINATED
            raise
        except Exception:
            self.state = SyncState.CRASHED
            raise
        self.state = SyncState.TERMINATED

    def stop(self) -> None:
        """End the loop after the current round."""
        self._running = False

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _bootstrap(self) -> Optional[str]:
        self.state = SyncState.BOOTSTRAPPING
        # Registered before catching up so invites that arrived while the
        # bot was offline are still accepted.
        self._conn.add_invite_handler(self.membership.on_invite)
        try:
            return await self._conn.create_filter(LAZY_LOAD_FILTER)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not upload sync filter, syncing without one: %s", exc)
            return None

    async def _catch_up(self, sync_token: Optional[str], filter_id: Optional[str]) -> str:
        self.state = SyncState.CATCHING_UP
        logger.info("Catching up (since=%s)", sync_token or "start")
        data = await self._sync_until_ok(sync_token, CATCH_UP_TIMEOUT_MS, filter_id)
        await self._deliver(data)
        next_batch = data["next_batch"]
        self._session.save_sync_token(next_batch)
        return next_batch

    async def _cleanup_devices(self) -> None:
        try:
            own = self._conn.device_id
            stale = [d for d in await self._conn.list_devices() if d != own]
            if not stale:
                logger.info("No other devices to delete")
                return
            logger.info("Deleting %d other device(s): %s", len(stale), ", ".join(stale))
            await self._conn.delete_devices(stale, password_provider=self._session.password)
            logger.info("Deleted %d other device(s)", len(stale))
        except Exception as exc:
            if not self._tolerate_cleanup_failure:
                raise
            logger.warning("Device cleanup failed (continuing): %s", exc)

    async def _steady_state(self, sync_token: str, filter_id: Optional[str]) -> None:
        self.state = SyncState.STEADY_STATE
        self._conn.add_message_handler(self.commands.on_message)
        logger.info("Listening for commands")

        while self._running:
            data = await self._sync_until_ok(sync_token, SYNC_TIMEOUT_MS, filter_id)
            await self._deliver(data)
            sync_token = data.get("next_batch") or sync_token
            self._session.save_sync_token(sync_token)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _sync_until_ok(
        self, since: Optional[str], timeout: int, filter_id: Optional[str],
    ) -> dict:
        """Repeat one sync request until it succeeds.  AuthExpired propagates."""
        while True:
            try:
                return await self._conn.sync(since=since, timeout=timeout, filter_id=filter_id)
            except SyncTransient as exc:
                logger.warning("Sync failed: %s - retrying in %ds", exc, SYNC_RETRY_DELAY)
                await self._sleep(SYNC_RETRY_DELAY)

    async def _deliver(self, data: dict) -> None:
        tasks = self._conn.dispatch(data)
        if not tasks:
            return
        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, Exception):
                logger.error("Event handler failed: %s", result)
