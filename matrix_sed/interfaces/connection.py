"""
Matrix connection

Thin wrapper around a mautrix-python ``Client``: login / token restore,
sync, event lookup, joins, sends and device management.  The rest of the
bot only talks to the homeserver through :class:`MatrixConnection` and only
sees the event types from :mod:`matrix_sed.core.types`.

The local store is a SQLite database under the session's store directory
holding mautrix's room state store.  When python-olm is installed the same
directory also holds an encrypted-room crypto store, keyed with the session's
store passphrase, and mautrix decrypts room events transparently.
"""

import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

try:
    import olm as _olm  # noqa: F401
    _HAS_OLM = True
except ImportError:
    _HAS_OLM = False

from mautrix.api import Method, Path as ApiPath
from mautrix.client import Client, InternalEventType
from mautrix.client.dispatcher import MembershipEventDispatcher
from mautrix.client.state_store.asyncpg import PgStateStore
from mautrix.errors import MatrixRequestError, MUnknownToken
from mautrix.types import DeviceID, EventType, RoomID, UserID
from mautrix.util.async_db import Database

from matrix_sed.core.types import (
    AuthExpired,
    AuthFailed,
    DeliveryFailed,
    JoinTransient,
    MessageEvent,
    SyncTransient,
    TimelineEvent,
    parse_timeline_event,
)
from matrix_sed.infra.paths import CRYPTO_DB_NAME, STATE_DB_NAME
from matrix_sed.infra.session_store import Credential

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_NAME = "matrix-sed"
EVENT_CACHE_SIZE = 500


def _uia_body(exc: Exception) -> Optional[dict]:
    """Return the user-interactive-auth response body carried by *exc*, if any.

    mautrix keeps the parsed body in ``exc.data`` or ``exc.body`` on some
    versions and only the raw text in ``exc.text`` on others.
    """
    for attr in ("data", "body"):
        data = getattr(exc, attr, None)
        if isinstance(data, dict) and "flows" in data:
            return data
    text = getattr(exc, "text", None)
    if isinstance(text, str):
        try:
            data = json.loads(text)
        except ValueError:
            return None
        if isinstance(data, dict) and "flows" in data:
            return data
    return None


class EventCache:
    """Bounded cache of recently seen room messages, keyed by (room, event)."""

    def __init__(self, max_size: int = EVENT_CACHE_SIZE) -> None:
        self._max_size = max_size
        self._events: dict[tuple[str, str], MessageEvent] = {}

    def add(self, event: MessageEvent) -> None:
        key = (event.room_id, event.event_id)
        self._events.pop(key, None)
        self._events[key] = event
        if len(self._events) > self._max_size:
            # dict preserves insertion order: drop the oldest half.
            for k in list(self._events)[: self._max_size // 2]:
                self._events.pop(k, None)

    def get(self, room_id: str, event_id: str) -> Optional[MessageEvent]:
        return self._events.get((room_id, event_id))

    def discard(self, room_id: str, event_id: str) -> None:
        self._events.pop((room_id, event_id), None)


class MatrixConnection:
    """An authenticated (or about to be) connection to one homeserver.

    Call :meth:`open` once, then :meth:`login` or :meth:`restore`.
    """

    def __init__(
        self,
        homeserver: str,
        user_id: str,
        store_path: Path,
        store_passphrase: str,
        device_name: str = DEFAULT_DEVICE_NAME,
    ) -> None:
        self.homeserver = homeserver
        self.user_id = user_id
        self.store_path = Path(store_path)
        self._store_passphrase = store_passphrase
        self._device_name = device_name
        self.client: Optional[Client] = None
        self.cache = EventCache()
        self._state_db: Optional[Database] = None
        self._crypto_db: Optional[Database] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open the local store and build the mautrix client."""
        self.store_path.mkdir(parents=True, exist_ok=True)
        db = Database.create(
            f"sqlite:///{(self.store_path / STATE_DB_NAME).resolve()}",
            upgrade_table=PgStateStore.upgrade_table,
        )
        await db.start()
        self._state_db = db

        client = Client(
            mxid=UserID(self.user_id),
            base_url=self.homeserver,
            state_store=PgStateStore(db),
        )
        # Translate m.room.member events into InternalEventType.* (JOIN, INVITE, LEAVE, ...)
        client.add_dispatcher(MembershipEventDispatcher)
        # Redacted messages must not be served from the cache.
        client.add_event_handler(EventType.ROOM_REDACTION, self.forget_redacted)
        self.client = client

    async def login(self, password: str) -> Credential:
        """Password login.  Raises AuthFailed on any failure."""
        try:
            resp = await self.client.login(
                identifier=self.user_id,
                password=password,
                device_name=self._device_name,
                store_access_token=True,
            )
        except Exception as exc:  # noqa: BLE001
            raise AuthFailed(f"login as {self.user_id} failed: {exc}") from exc

        self.user_id = str(resp.user_id)
        self.client.mxid = resp.user_id
        logger.info("Logged in as %s (device_id=%s)", resp.user_id, resp.device_id)
        await self._setup_crypto()
        return Credential(access_token=resp.access_token, device_id=str(resp.device_id))

    async def restore(self, credential: Credential) -> None:
        """Reuse a stored access token.  Raises AuthExpired if it is rejected."""
        self.client.api.token = credential.access_token
        self.client.device_id = DeviceID(credential.device_id)
        try:
            whoami = await self.client.whoami()
        except MUnknownToken as exc:
            raise AuthExpired(
                f"stored access token for {self.user_id} was rejected by {self.homeserver}"
            ) from exc
        self.user_id = str(whoami.user_id)
        self.client.mxid = whoami.user_id
        logger.info(
            "Restored session for %s (device_id=%s)", whoami.user_id, credential.device_id,
        )
        await self._setup_crypto()

    async def _setup_crypto(self) -> None:
        if not _HAS_OLM:
            logger.info("python-olm not installed; encrypted rooms are not supported")
            return

        from mautrix.crypto import OlmMachine
        from mautrix.crypto.store import PgCryptoStore

        db = Database.create(
            f"sqlite:///{(self.store_path / CRYPTO_DB_NAME).resolve()}",
            upgrade_table=PgCryptoStore.upgrade_table,
        )
        await db.start()
        self._crypto_db = db

        crypto_store = PgCryptoStore(
            account_id=self.user_id,
            pickle_key=self._store_passphrase,
            db=db,
        )
        olm = OlmMachine(
            client=self.client,
            crypto_store=crypto_store,
            state_store=self.client.state_store,
        )
        await olm.load()
        self.client.crypto = olm
        await olm.share_keys()
        logger.info("Crypto ready for device_id=%s", self.client.device_id)

    async def close(self) -> None:
        """Tear down client and local store."""
        if self.client is not None:
            self.client.stop()
            try:
                await self.client.api.session.close()
            except Exception:  # noqa: BLE001
                pass
            self.client = None
        for db in (self._crypto_db, self._state_db):
            if db is not None:
                await db.stop()
        self._crypto_db = None
        self._state_db = None

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def add_invite_handler(self, handler: Callable[..., Awaitable[None]]) -> None:
        self.client.add_event_handler(InternalEventType.INVITE, handler)

    def add_message_handler(self, handler: Callable[..., Awaitable[None]]) -> None:
        self.client.add_event_handler(EventType.ROOM_MESSAGE, handler)

    async def create_filter(self, filter_data: dict) -> str:
        """Upload a sync filter and return its id."""
        resp = await self.client.api.request(
            Method.POST, ApiPath.v3.user[self.user_id].filter, filter_data,
        )
        return resp["filter_id"]

    async def sync(self, since: Optional[str], timeout: int, filter_id: Optional[str]) -> dict:
        """One /sync request.  Raises AuthExpired if the token was revoked."""
        try:
            return await self.client.sync(since=since, timeout=timeout, filter_id=filter_id)
        except MUnknownToken as exc:
            raise AuthExpired(f"access token for {self.user_id} is no longer valid") from exc
        except Exception as exc:  # noqa: BLE001
            raise SyncTransient(str(exc) or type(exc).__name__) from exc

    def dispatch(self, sync_data: dict) -> list:
        """Feed a sync response to the registered handlers; returns their tasks."""
        return self.client.handle_sync(sync_data)

    async def forget_redacted(self, evt) -> None:
        """EventType.ROOM_REDACTION handler: drop the redacted event from the cache."""
        # Room v11 moved ``redacts`` into the content.
        redacts = getattr(evt, "redacts", None) or getattr(evt.content, "redacts", None)
        if redacts:
            self.cache.discard(str(evt.room_id), str(redacts))

    # ------------------------------------------------------------------
    # Room history
    # ------------------------------------------------------------------

    async def _decrypt(self, raw: dict) -> dict:
        if raw.get("type") != "m.room.encrypted" or self.client.crypto is None:
            return raw
        from mautrix.types import EncryptedEvent
        try:
            evt = EncryptedEvent.deserialize(raw)
            decrypted = await self.client.crypto.decrypt_megolm_event(evt)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Could not decrypt %s: %s", raw.get("event_id"), exc)
            return raw
        return decrypted.serialize()

    async def get_event(self, room_id: str, event_id: str) -> TimelineEvent:
        """Fetch one event, from the cache when possible."""
        cached = self.cache.get(room_id, event_id)
        if cached is not None:
            return cached
        raw = await self.client.api.request(
            Method.GET, ApiPath.v3.rooms[room_id].event[event_id],
        )
        event = parse_timeline_event(await self._decrypt(raw), room_id)
        if isinstance(event, MessageEvent):
            self.cache.add(event)
        return event

    async def events_before(self, room_id: str, event_id: str, limit: int) -> list[TimelineEvent]:
        """Timeline events preceding *event_id*, nearest first.

        The /context ``limit`` covers events before and after together, and
        servers split it roughly in half, so twice *limit* is requested.
        """
        resp = await self.client.api.request(
            Method.GET,
            ApiPath.v3.rooms[room_id].context[event_id],
            query_params={"limit": str(limit * 2)},
        )
        events = []
        for raw in resp.get("events_before", [])[:limit]:
            events.append(parse_timeline_event(await self._decrypt(raw), room_id))
        return events

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def join(self, room_id: str) -> None:
        try:
            await self.client.join_room_by_id(RoomID(room_id))
        except Exception as exc:  # noqa: BLE001
            raise JoinTransient(str(exc) or type(exc).__name__) from exc

    async def send(self, room_id: str, content: dict) -> str:
        """Send an ``m.room.message``; encrypted automatically where needed."""
        try:
            event_id = await self.client.send_message_event(
                RoomID(room_id), EventType.ROOM_MESSAGE, content,
            )
        except Exception as exc:  # noqa: BLE001
            raise DeliveryFailed(str(exc) or type(exc).__name__) from exc
        return str(event_id)

    async def list_devices(self) -> list[str]:
        resp = await self.client.api.request(Method.GET, ApiPath.v3.devices)
        return [d["device_id"] for d in resp.get("devices", []) if d.get("device_id")]

    async def delete_devices(
        self, device_ids: list[str], password_provider: Optional[Callable[[], str]] = None,
    ) -> None:
        """Delete *device_ids*, answering a password auth challenge if required.

        *password_provider* is only called when the server asks for
        re-authentication; without one the challenge error is re-raised.
        """
        if not device_ids:
            return
        path = ApiPath.v3.delete_devices
        try:
            await self.client.api.request(Method.POST, path, {"devices": device_ids})
            return
        except MatrixRequestError as exc:
            body = _uia_body(exc)
            if body is None or exc.http_status != 401 or password_provider is None:
                raise

        auth = {
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": self.user_id},
            "password": password_provider(),
        }
        if body.get("session"):
            auth["session"] = body["session"]
        await self.client.api.request(
            Method.POST, path, {"devices": device_ids, "auth": auth},
        )

    @property
    def device_id(self) -> str:
        return str(self.client.device_id) if self.client is not None else ""
