import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from mautrix.errors import MatrixRequestError, MUnknownToken

from matrix_sed.core.types import (
    AuthExpired,
    DeliveryFailed,
    JoinTransient,
    MessageEvent,
    OtherEvent,
    SyncTransient,
)
from matrix_sed.infra.session_store import Credential
from matrix_sed.interfaces import connection as connection_module
from matrix_sed.interfaces.connection import EventCache, MatrixConnection, _uia_body

from conftest import ALICE, BOT, ROOM, message, raw_message


class AuthChallenge(MatrixRequestError):
    """A 401 user-interactive auth response."""

    def __init__(self, body: dict, http_status: int = 401) -> None:
        super().__init__(f"{http_status}: auth required")
        self.http_status = http_status
        self.text = json.dumps(body)


class FakeApi:
    """Records requests and answers them from a handler function."""

    def __init__(self, handler=None) -> None:
        self.calls: list[dict] = []
        self.token = None
        self._handler = handler

    async def request(self, method, path, content=None, query_params=None):
        self.calls.append({
            "method": method, "path": str(path), "content": content, "query_params": query_params,
        })
        return await self._handler(method, str(path), content, query_params)


def _client(handler=None, **attrs):
    client = SimpleNamespace(
        api=FakeApi(handler),
        crypto=None,
        device_id="CURRENT",
        sync=AsyncMock(),
        whoami=AsyncMock(),
        join_room_by_id=AsyncMock(),
        send_message_event=AsyncMock(return_value="$sent"),
    )
    for key, value in attrs.items():
        setattr(client, key, value)
    return client


@pytest.fixture
def make_conn(tmp_path):
    def _make(client):
        conn = MatrixConnection("https://hs.example.org", BOT, tmp_path / "store", "passphrase")
        conn.client = client
        return conn
    return _make


def _preceding(count):
    """Raw events before "$cmd", nearest first as /context returns them."""
    return [raw_message(f"$m{i}", f"message {i}") for i in range(count)]


class TestEventCache:

    def test_evicts_oldest_half_when_full(self):
        cache = EventCache(max_size=4)
        for i in range(5):
            cache.add(message(f"$e{i}", "text"))
        assert cache.get(ROOM, "$e0") is None
        assert cache.get(ROOM, "$e1") is None
        assert cache.get(ROOM, "$e4") is not None

    def test_discard(self):
        cache = EventCache()
        cache.add(message("$e", "text"))
        cache.discard(ROOM, "$e")
        cache.discard(ROOM, "$unknown")
        assert cache.get(ROOM, "$e") is None


class TestSync:

    @pytest.mark.asyncio
    async def test_passes_arguments_and_returns_response(self, make_conn):
        client = _client()
        client.sync.return_value = {"next_batch": "s2"}
        conn = make_conn(client)

        assert await conn.sync("s1", 30_000, "filter1") == {"next_batch": "s2"}
        client.sync.assert_awaited_once_with(since="s1", timeout=30_000, filter_id="filter1")

    @pytest.mark.asyncio
    async def test_unknown_token_is_auth_expired(self, make_conn):
        client = _client(sync=AsyncMock(side_effect=MUnknownToken(401, "Invalid access token")))
        with pytest.raises(AuthExpired):
            await make_conn(client).sync("s1", 0, None)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        ConnectionResetError("reset by peer"),
        MatrixRequestError("502: Bad Gateway"),
        TimeoutError(),
    ])
    async def test_other_failures_are_transient(self, make_conn, error):
        client = _client(sync=AsyncMock(side_effect=error))
        with pytest.raises(SyncTransient):
            await make_conn(client).sync("s1", 0, None)


class TestRestore:

    @pytest.mark.asyncio
    async def test_rejected_token_is_auth_expired(self, make_conn, monkeypatch):
        monkeypatch.setattr(connection_module, "_HAS_OLM", False)
        client = _client(whoami=AsyncMock(side_effect=MUnknownToken(401, "Invalid access token")))
        with pytest.raises(AuthExpired):
            await make_conn(client).restore(Credential("syt_old", "DEV"))

    @pytest.mark.asyncio
    async def test_valid_token_sets_identity(self, make_conn, monkeypatch):
        monkeypatch.setattr(connection_module, "_HAS_OLM", False)
        client = _client(whoami=AsyncMock(return_value=SimpleNamespace(user_id=BOT)))
        conn = make_conn(client)

        await conn.restore(Credential("syt_token", "DEV"))

        assert client.api.token == "syt_token"
        assert conn.device_id == "DEV"
        assert conn.user_id == BOT


class TestGetEvent:

    @pytest.mark.asyncio
    async def test_cached_event_skips_the_server(self, make_conn):
        async def _never(*args):
            raise AssertionError("server must not be asked")

        conn = make_conn(_client(_never))
        conn.cache.add(message("$t", "teh cat"))

        event = await conn.get_event(ROOM, "$t")

        assert isinstance(event, MessageEvent)
        assert event.body == "teh cat"

    @pytest.mark.asyncio
    async def test_fetches_and_caches_uncached_event(self, make_conn):
        async def _event(method, path, content, query_params):
            assert "/event/" in path
            return raw_message("$t", "teh cat")

        conn = make_conn(_client(_event))

        first = await conn.get_event(ROOM, "$t")
        second = await conn.get_event(ROOM, "$t")

        assert first.body == second.body == "teh cat"
        assert len(conn.client.api.calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("redaction", [
        SimpleNamespace(room_id=ROOM, redacts="$t", content=SimpleNamespace()),
        SimpleNamespace(room_id=ROOM, redacts=None, content=SimpleNamespace(redacts="$t")),
    ])
    async def test_redaction_evicts_cached_event(self, make_conn, redaction):
        async def _redacted(method, path, content, query_params):
            raw = raw_message("$t", "teh cat")
            raw["content"] = {}
            raw["unsigned"] = {"redacted_because": {"type": "m.room.redaction", "sender": ALICE}}
            return raw

        conn = make_conn(_client(_redacted))
        conn.cache.add(message("$t", "teh cat"))

        await conn.forget_redacted(redaction)
        event = await conn.get_event(ROOM, "$t")

        assert isinstance(event, OtherEvent)
        assert conn.cache.get(ROOM, "$t") is None

    @pytest.mark.asyncio
    async def test_undecryptable_event_falls_back_to_raw(self, make_conn):
        async def _encrypted(method, path, content, query_params):
            return {
                "type": "m.room.encrypted",
                "event_id": "$t",
                "room_id": ROOM,
                "sender": ALICE,
                "content": {"algorithm": "m.megolm.v1.aes-sha2", "ciphertext": "..."},
            }

        crypto = SimpleNamespace(decrypt_megolm_event=AsyncMock(side_effect=RuntimeError("no session")))
        conn = make_conn(_client(_encrypted, crypto=crypto))

        event = await conn.get_event(ROOM, "$t")

        assert isinstance(event, OtherEvent)
        assert event.event_type == "m.room.encrypted"
        assert conn.cache.get(ROOM, "$t") is None


class TestEventsBefore:

    @pytest.mark.asyncio
    async def test_requests_double_limit_because_servers_split_it(self, make_conn):
        history = _preceding(8)

        async def _context(method, path, content, query_params):
            assert "/context/" in path
            # Synapse gives half of the limit to events before the anchor.
            return {"events_before": history[: int(query_params["limit"]) // 2], "events_after": []}

        conn = make_conn(_client(_context))

        events = await conn.events_before(ROOM, "$cmd", 5)

        assert conn.client.api.calls[0]["query_params"] == {"limit": "10"}
        assert [e.event_id for e in events] == ["$m0", "$m1", "$m2", "$m3", "$m4"]

    @pytest.mark.asyncio
    async def test_never_returns_more_than_limit(self, make_conn):
        async def _context(method, path, content, query_params):
            return {"events_before": _preceding(8)}

        events = await make_conn(_client(_context)).events_before(ROOM, "$cmd", 3)

        assert [e.event_id for e in events] == ["$m0", "$m1", "$m2"]


class TestActions:

    @pytest.mark.asyncio
    async def test_join_failure_is_transient(self, make_conn):
        client = _client(join_room_by_id=AsyncMock(side_effect=MatrixRequestError("403: not invited")))
        with pytest.raises(JoinTransient):
            await make_conn(client).join(ROOM)

    @pytest.mark.asyncio
    async def test_send_returns_event_id(self, make_conn):
        client = _client()
        content = {"msgtype": "m.notice", "body": "fixed"}

        assert await make_conn(client).send(ROOM, content) == "$sent"
        args = client.send_message_event.await_args.args
        assert str(args[0]) == ROOM
        assert args[2] == content

    @pytest.mark.asyncio
    async def test_send_failure_is_delivery_failed(self, make_conn):
        client = _client(send_message_event=AsyncMock(side_effect=MatrixRequestError("403: forbidden")))
        with pytest.raises(DeliveryFailed):
            await make_conn(client).send(ROOM, {"msgtype": "m.notice", "body": "x"})

    @pytest.mark.asyncio
    async def test_list_devices(self, make_conn):
        async def _devices(method, path, content, query_params):
            return {"devices": [{"device_id": "A"}, {"device_id": "B"}, {}]}

        assert await make_conn(_client(_devices)).list_devices() == ["A", "B"]


class TestDeleteDevices:

    CHALLENGE = {"session": "uia-session", "flows": [{"stages": ["m.login.password"]}], "params": {}}

    def _challenging(self, challenge):
        async def _handler(method, path, content, query_params):
            if "auth" not in content:
                raise challenge
            return {}
        return _handler

    @pytest.mark.asyncio
    async def test_answers_password_challenge(self, make_conn):
        conn = make_conn(_client(self._challenging(AuthChallenge(self.CHALLENGE))))
        asked = []

        def _password():
            asked.append(True)
            return "hunter2"

        await conn.delete_devices(["OLD1", "OLD2"], password_provider=_password)

        calls = conn.client.api.calls
        assert len(calls) == 2
        assert calls[1]["content"] == {
            "devices": ["OLD1", "OLD2"],
            "auth": {
                "type": "m.login.password",
                "identifier": {"type": "m.id.user", "user": BOT},
                "password": "hunter2",
                "session": "uia-session",
            },
        }
        assert asked == [True]

    @pytest.mark.asyncio
    async def test_no_challenge_needs_no_password(self, make_conn):
        async def _ok(method, path, content, query_params):
            return {}

        conn = make_conn(_client(_ok))
        await conn.delete_devices(["OLD1"], password_provider=lambda: pytest.fail("not asked"))
        assert len(conn.client.api.calls) == 1

    @pytest.mark.asyncio
    async def test_challenge_without_provider_is_raised(self, make_conn):
        conn = make_conn(_client(self._challenging(AuthChallenge(self.CHALLENGE))))
        with pytest.raises(MatrixRequestError):
            await conn.delete_devices(["OLD1"])

    @pytest.mark.asyncio
    async def test_other_errors_are_raised(self, make_conn):
        conn = make_conn(_client(self._challenging(AuthChallenge(self.CHALLENGE, http_status=403))))
        with pytest.raises(MatrixRequestError):
            await conn.delete_devices(["OLD1"], password_provider=lambda: "hunter2")

    @pytest.mark.asyncio
    async def test_empty_list_is_a_no_op(self, make_conn):
        conn = make_conn(_client())
        await conn.delete_devices([])
        assert conn.client.api.calls == []


class TestUiaBody:

    def test_parsed_body_attribute(self):
        exc = MatrixRequestError("401")
        exc.data = {"flows": [], "session": "s"}
        assert _uia_body(exc) == {"flows": [], "session": "s"}

    def test_raw_text(self):
        assert _uia_body(AuthChallenge({"flows": []})) == {"flows": []}

    @pytest.mark.parametrize("text", ["not json", json.dumps({"errcode": "M_FORBIDDEN"})])
    def test_not_a_challenge(self, text):
        exc = MatrixRequestError("401")
        exc.text = text
        assert _uia_body(exc) is None
