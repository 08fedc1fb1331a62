"""Shared fakes for the connection collaborator."""

import asyncio
from types import SimpleNamespace
from typing import Optional

import pytest

from matrix_sed.core.types import (
    AuthExpired,
    AuthFailed,
    JoinTransient,
    MessageEvent,
    OtherEvent,
    SyncTransient,
    parse_timeline_event,
)
from matrix_sed.infra.session_store import Credential
from matrix_sed.interfaces.connection import EventCache

BOT = "@sedbot:example.org"
ALICE = "@alice:example.org"
ROOM = "!room:example.org"


def raw_message(event_id, body, sender=ALICE, room_id=ROOM, relates_to=None, msgtype="m.text", **extra):
    content = {"msgtype": msgtype, "body": body}
    if relates_to is not None:
        content["m.relates_to"] = relates_to
    raw = {
        "type": "m.room.message",
        "event_id": event_id,
        "room_id": room_id,
        "sender": sender,
        "content": content,
    }
    raw.update(extra)
    return raw


def message(event_id, body, **kwargs) -> MessageEvent:
    event = parse_timeline_event(raw_message(event_id, body, **kwargs))
    assert isinstance(event, MessageEvent)
    return event


class FakeMautrixEvent:
    """Stands in for a mautrix MessageEvent: exposes serialize() and room_id."""

    def __init__(self, raw: dict) -> None:
        self._raw = raw
        self.room_id = raw["room_id"]
        self.event_id = raw["event_id"]

    def serialize(self) -> dict:
        return dict(self._raw)


class FakeConnection:
    """In-memory replacement for MatrixConnection."""

    def __init__(self, homeserver="https://hs.example.org", user_id=BOT,
                 store_path=None, store_passphrase="", device_name="matrix-sed") -> None:
        self.homeserver = homeserver
        self.user_id = user_id
        self.store_path = store_path
        self.store_passphrase = store_passphrase
        self.device_name = device_name
        self.device_id = "CURRENT"
        self.cache = EventCache()

        self.events: dict[tuple[str, str], object] = {}
        self.timeline: dict[str, list] = {}
        self.sent: list[tuple[str, dict]] = []
        self.send_error: Optional[Exception] = None

        self.join_failures = 0
        self.join_calls: list[str] = []

        self.sync_results: list = []
        self.sync_calls: list[dict] = []
        self.invite_handlers: list = []
        self.message_handlers: list = []
        self.filters: list[dict] = []

        self.devices = ["CURRENT"]
        self.deleted: list[list[str]] = []
        self.delete_requires_password = False
        self.delete_error: Optional[Exception] = None

        self.valid_passwords = {"hunter2"}
        self.token_valid = True
        self.login_attempts: list[str] = []
        self.restored: Optional[Credential] = None
        self.opened = False
        self.closed = False

    # lifecycle -----------------------------------------------------------

    async def open(self) -> None:
        self.opened = True

    async def login(self, password: str) -> Credential:
        self.login_attempts.append(password)
        if password not in self.valid_passwords:
            raise AuthFailed("M_FORBIDDEN: Invalid username or password")
        return Credential(access_token="syt_token", device_id="NEWDEVICE")

    async def restore(self, credential: Credential) -> None:
        if not self.token_valid:
            raise AuthExpired("token rejected")
        self.restored = credential

    async def close(self) -> None:
        self.closed = True

    # history -------------------------------------------------------------

    def add_event(self, event) -> None:
        self.events[(event.room_id, event.event_id)] = event
        self.timeline.setdefault(event.room_id, []).append(event)

    async def get_event(self, room_id, event_id):
        cached = self.cache.get(room_id, event_id)
        if cached is not None:
            return cached
        try:
            return self.events[(room_id, event_id)]
        except KeyError:
            raise RuntimeError(f"404 event {event_id} not found") from None

    async def events_before(self, room_id, event_id, limit):
        timeline = self.timeline.get(room_id, [])
        ids = [e.event_id for e in timeline]
        if event_id not in ids:
            raise RuntimeError(f"404 event {event_id} not found")
        idx = ids.index(event_id)
        return list(reversed(timeline[max(0, idx - limit):idx]))

    # actions -------------------------------------------------------------

    async def send(self, room_id, content):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((room_id, content))
        return f"$sent{len(self.sent)}"

    async def join(self, room_id):
        self.join_calls.append(room_id)
        if len(self.join_calls) <= self.join_failures:
            raise JoinTransient("M_FORBIDDEN: not invited yet")

    async def list_devices(self):
        return list(self.devices)

    async def delete_devices(self, device_ids, password_provider=None):
        if self.delete_error is not None:
            raise self.delete_error
        if self.delete_requires_password:
            if password_provider is None:
                raise RuntimeError("401: auth required")
            if password_provider() not in self.valid_passwords:
                raise RuntimeError("401: wrong password")
        self.deleted.append(list(device_ids))

    # sync ----------------------------------------------------------------

    def add_invite_handler(self, handler) -> None:
        self.invite_handlers.append(handler)

    def add_message_handler(self, handler) -> None:
        self.message_handlers.append(handler)

    async def create_filter(self, filter_data):
        self.filters.append(filter_data)
        return "filter1"

    async def sync(self, since, timeout, filter_id):
        self.sync_calls.append({"since": since, "timeout": timeout, "filter_id": filter_id})
        if not self.sync_results:
            raise asyncio.CancelledError()
        result = self.sync_results.pop(0)
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return result()
        return result

    def dispatch(self, data):
        tasks = []
        for room_id in data.get("invites", []):
            evt = SimpleNamespace(room_id=room_id, state_key=self.user_id, sender=ALICE)
            for handler in self.invite_handlers:
                tasks.append(asyncio.create_task(handler(evt)))
        for raw in data.get("messages", []):
            event = parse_timeline_event(raw)
            if not isinstance(event, OtherEvent):
                self.add_event(event)
            for handler in self.message_handlers:
                tasks.append(asyncio.create_task(handler(FakeMautrixEvent(raw))))
        return tasks


class FakeSession:
    """Records sync tokens the loop persists."""

    def __init__(self, password: str = "hunter2") -> None:
        self.saved_tokens: list[str] = []
        self._password = password
        self.password_calls = 0

    def save_sync_token(self, token: str) -> None:
        self.saved_tokens.append(token)

    def password(self) -> str:
        self.password_calls += 1
        return self._password


def sync_error(msg: str = "502 Bad Gateway") -> SyncTransient:
    return SyncTransient(msg)


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def no_sleep():
    delays: list[float] = []

    async def _sleep(delay):
        delays.append(delay)

    _sleep.delays = delays
    return _sleep
