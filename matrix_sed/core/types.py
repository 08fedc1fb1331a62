"""
Shared type definitions for the matrix_sed.core package.

Houses the closed variant types the bot understands (event relations and
timeline events), the parsed command and diff types, and the exception
taxonomy used across the core and interface modules.
"""

from dataclasses import dataclass
from typing import Optional, Union

import regex as _regex


class MatrixSedError(Exception):
    """Base class for all errors raised by matrix_sed."""


class ConfigError(MatrixSedError):
    """Required configuration is missing or invalid."""


class AuthFailed(MatrixSedError):
    """Login with the configured credentials was rejected."""


class AuthExpired(MatrixSedError):
    """A restored access token was rejected by the homeserver."""


class SessionCorrupt(MatrixSedError):
    """The persisted session file could not be read or parsed."""


class MalformedCommand(MatrixSedError):
    """A substitution command has invalid syntax."""


class TargetUnresolvable(MatrixSedError):
    """No valid message could be found for a command to apply to."""


class DeliveryFailed(MatrixSedError):
    """Sending the corrected message to the room failed."""


class SyncTransient(MatrixSedError):
    """A sync round failed and will be retried."""


class JoinTransient(MatrixSedError):
    """A room join attempt failed and may be retried."""


# ---------------------------------------------------------------------------
# Relations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NoRelation:
    pass


@dataclass(frozen=True)
class DirectReply:
    event_id: str


@dataclass(frozen=True)
class ThreadReply:
    root_id: str
    in_reply_to: Optional[str] = None
    is_falling_back: bool = False


Relation = Union[NoRelation, DirectReply, ThreadReply]


def parse_relation(content: dict) -> Relation:
    """Build a :data:`Relation` from the ``m.relates_to`` block of *content*.

    Relation kinds other than replies and threads (annotations, edits,
    references) carry no reply target and map to :class:`NoRelation`.
    """
    relates_to = content.get("m.relates_to")
    if not isinstance(relates_to, dict):
        return NoRelation()

    in_reply_to = relates_to.get("m.in_reply_to")
    reply_id = in_reply_to.get("event_id") if isinstance(in_reply_to, dict) else None

    if relates_to.get("rel_type") == "m.thread" and relates_to.get("event_id"):
        return ThreadReply(
            root_id=relates_to["event_id"],
            in_reply_to=reply_id,
            is_falling_back=bool(relates_to.get("is_falling_back", False)),
        )
    if reply_id:
        return DirectReply(reply_id)
    return NoRelation()


# ---------------------------------------------------------------------------
# Timeline events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MessageEvent:
    """An original, non-redacted ``m.room.message`` event."""
    event_id: str
    room_id: str
    sender: str
    msgtype: str
    body: str
    relation: Relation = NoRelation()

    @property
    def thread_root(self) -> Optional[str]:
        """Root event id of the thread this message belongs to, if any."""
        if isinstance(self.relation, ThreadReply):
            return self.relation.root_id
        return None


@dataclass(frozen=True)
class OtherEvent:
    """Any timeline event the bot does not act on."""
    event_id: str
    room_id: str
    event_type: str


TimelineEvent = Union[MessageEvent, OtherEvent]


def parse_timeline_event(raw: dict, room_id: str = "") -> TimelineEvent:
    """Classify a raw client-server API event dict.

    Redacted messages, edits (``m.replace``) and messages without a string
    body all become :class:`OtherEvent`.
    """
    event_id = raw.get("event_id") or ""
    room_id = raw.get("room_id") or room_id
    event_type = raw.get("type") or ""
    content = raw.get("content")

    if event_type != "m.room.message" or "state_key" in raw or not isinstance(content, dict):
        return OtherEvent(event_id, room_id, event_type)

    unsigned = raw.get("unsigned") or {}
    if unsigned.get("redacted_because"):
        return OtherEvent(event_id, room_id, event_type)

    relates_to = content.get("m.relates_to")
    if isinstance(relates_to, dict) and relates_to.get("rel_type") == "m.replace":
        return OtherEvent(event_id, room_id, event_type)

    body = content.get("body")
    if not isinstance(body, str):
        return OtherEvent(event_id, room_id, event_type)

    return MessageEvent(
        event_id=event_id,
        room_id=room_id,
        sender=raw.get("sender") or "",
        msgtype=content.get("msgtype") or "",
        body=body,
        relation=parse_relation(content),
    )


# ---------------------------------------------------------------------------
# Commands and diffs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Command:
    delimiter: str
    pattern: str
    replacement: str
    flags: str
    regex: _regex.Pattern
    count: int = 1  # 0 = replace every occurrence


EQUAL = "equal"
INSERTED = "inserted"
DELETED = "deleted"


@dataclass(frozen=True)
class DiffSegment:
    tag: str   # EQUAL, INSERTED or DELETED
    text: str
