"""
Session persistence.

The session file records everything needed to reconnect without logging in
again: the homeserver, the local store location and its passphrase, the
access token / device id pair, and the sync token of the last fully
processed sync round.

Writes replace the whole file via a temp file + os.replace() in the same
directory, so a crash mid-write leaves either the old or the new record.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Optional

from matrix_sed.core.types import SessionCorrupt

logger = logging.getLogger(__name__)

_write_lock = threading.Lock()


@dataclass(frozen=True)
class Credential:
    access_token: str
    device_id: str


@dataclass(frozen=True)
class SessionRecord:
    homeserver: str
    user_id: str
    store_path: str
    store_passphrase: str
    credential: Credential
    sync_token: Optional[str] = None

    def with_sync_token(self, sync_token: Optional[str]) -> "SessionRecord":
        return replace(self, sync_token=sync_token)

    def __repr__(self) -> str:
        # Keep secrets out of logs and tracebacks.
        return (
            f"SessionRecord(homeserver={self.homeserver!r}, user_id={self.user_id!r}, "
            f"store_path={self.store_path!r}, device_id={self.credential.device_id!r}, "
            f"sync_token={self.sync_token!r})"
        )


def to_dict(record: SessionRecord) -> dict:
    return asdict(record)


def from_dict(data: dict) -> SessionRecord:
    """Build a record from its JSON form; raises SessionCorrupt on bad shape."""
    if not isinstance(data, dict):
        raise SessionCorrupt("session record is not a JSON object")
    try:
        cred = data["credential"]
        sync_token = data.get("sync_token")
        record = SessionRecord(
            homeserver=data["homeserver"],
            user_id=data["user_id"],
            store_path=data["store_path"],
            store_passphrase=data["store_passphrase"],
            credential=Credential(
                access_token=cred["access_token"],
                device_id=cred["device_id"],
            ),
            sync_token=sync_token,
        )
    except (KeyError, TypeError) as exc:
        raise SessionCorrupt(f"session record is missing field {exc}") from exc

    for name in ("homeserver", "user_id", "store_path", "store_passphrase"):
        if not isinstance(getattr(record, name), str) or not getattr(record, name):
            raise SessionCorrupt(f"session record field {name!r} is invalid")
    if not isinstance(record.credential.access_token, str) or not record.credential.access_token:
        raise SessionCorrupt("session record has no access token")
    if sync_token is not None and not isinstance(sync_token, str):
        raise SessionCorrupt("session record sync_token is not a string")
    return record


class SessionStore:
    """Reads and writes a :class:`SessionRecord` at a fixed path."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> SessionRecord:
        """Read the record.  Raises SessionCorrupt if it cannot be parsed."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
            raise SessionCorrupt(f"cannot read session file {self.path}: {exc}") from exc
        return from_dict(data)

    def save(self, record: SessionRecord) -> None:
        """Atomically replace the session file with *record*."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(to_dict(record), indent=2)

        with _write_lock:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), suffix=".tmp", prefix=".session_",
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                    fd = -1  # fdopen took ownership of the descriptor
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                try:
                    os.chmod(tmp_path, 0o600)
                except OSError:
                    pass
                os.replace(tmp_path, str(self.path))
            except BaseException:
                if fd >= 0:
                    os.close(fd)
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        logger.debug("Session saved to %s (sync_token=%s)", self.path, record.sync_token)
