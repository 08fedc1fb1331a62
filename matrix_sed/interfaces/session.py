"""
Session lifecycle

Decides at startup whether to restore the persisted session or to log in,
and owns every later write of the session file (sync token updates).

Restore:  session file present -> reopen the recorded store, reuse the token.
Login:    no session file      -> new random store directory + passphrase,
          password login (configured password: one attempt; prompted
          password: re-prompt until it works), then persist.
"""

import getpass
import logging
import secrets
from pathlib import Path
from typing import Callable, Optional

from matrix_sed.core.types import AuthFailed
from matrix_sed.infra.paths import store_root
from matrix_sed.infra.session_store import Credential, SessionRecord, SessionStore
from matrix_sed.interfaces.connection import MatrixConnection

logger = logging.getLogger(__name__)


def prompt_password() -> str:
    print("Type password for the bot (characters won't show up as you type them)")
    return getpass.getpass("password: ")


class SessionLifecycleManager:

    def __init__(
        self,
        config,
        store: SessionStore,
        prompt: Callable[[], str] = prompt_password,
        connection_factory: Callable[..., MatrixConnection] = MatrixConnection,
    ) -> None:
        self._cfg = config
        self._store = store
        self._prompt = prompt
        self._connection_factory = connection_factory
        self._password: str = config.password
        self.record: Optional[SessionRecord] = None

    async def obtain_connection(self) -> tuple[MatrixConnection, Optional[str]]:
        """Return an authenticated connection and the sync token to resume from.

        Raises SessionCorrupt, AuthExpired or AuthFailed; each is fatal.
        """
        if self._store.exists():
            return await self._restore()
        return await self._login()

    async def _restore(self) -> tuple[MatrixConnection, Optional[str]]:
        record = self._store.load()
        logger.info("Restoring previous session for %s on %s", record.user_id, record.homeserver)

        conn = self._connection_factory(
            record.homeserver,
            record.user_id,
            Path(record.store_path),
            record.store_passphrase,
            self._cfg.device_name,
        )
        await conn.open()
        try:
            await conn.restore(record.credential)
        except BaseException:
            await conn.close()
            raise

        self.record = record
        if record.sync_token:
            logger.info("Resuming sync from stored token")
        return conn, record.sync_token

    async def _login(self) -> tuple[MatrixConnection, Optional[str]]:
        passphrase = secrets.token_urlsafe(32)
        # Absolute, so a restart from another working directory finds the store.
        store_path = (store_root(self._cfg.data_dir) / secrets.token_hex(8)).resolve()
        logger.info("No previous session found, logging in as %s", self._cfg.username)

        conn = self._connection_factory(
            self._cfg.homeserver,
            self._cfg.username,
            store_path,
            passphrase,
            self._cfg.device_name,
        )
        await conn.open()
        try:
            credential = await self._login_with_password(conn)
        except BaseException:
            await conn.close()
            raise

        record = SessionRecord(
            homeserver=self._cfg.homeserver,
            user_id=conn.user_id,
            store_path=str(store_path),
            store_passphrase=passphrase,
            credential=credential,
        )
        self._store.save(record)
        self.record = record
        logger.info("Session persisted to %s", self._store.path)
        return conn, None

    async def _login_with_password(self, conn: MatrixConnection) -> Credential:
        configured = bool(self._cfg.password)
        while True:
            password = self._cfg.password if configured else self._prompt()
            try:
                credential = await conn.login(password)
            except AuthFailed as exc:
                if configured:
                    raise
                logger.error("Error logging in: %s", exc)
                continue
            self._password = password
            return credential

    def save_sync_token(self, sync_token: str) -> None:
        """Persist the token of a fully processed sync round."""
        if self.record is None:
            raise RuntimeError("no session to update")
        self.record = self.record.with_sync_token(sync_token)
        self._store.save(self.record)

    def password(self) -> str:
        """Account password for re-authentication, prompting if none is known."""
        if not self._password:
            self._password = self._prompt()
        return self._password
