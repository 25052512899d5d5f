"""Short session codes mapped to ongoing or past conversations.

Chat sessions get 2-character codes, webhook sessions 3-character codes,
drawn from ``a-z0-9`` without repeating a character inside one code.
Active sessions and an archive of ended/expired ones live in a single
JSON document written atomically (temp file + rename).
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import string
import time
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from courier.errors import PersistenceCorruption, SessionCodeExhausted, ValidationError
from courier.job_queue import parse_iso

logger = logging.getLogger(__name__)

CHARSET = string.ascii_lowercase + string.digits
KIND_CHAT = "chat"
KIND_WEBHOOK = "webhook"
CODE_LENGTHS = {KIND_CHAT: 2, KIND_WEBHOOK: 3}
MAX_CODE_ATTEMPTS = 100
MAX_ARCHIVE = 500
DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60

_rng = secrets.SystemRandom()


def generate_code(length: int) -> str:
    """Random code with no repeated characters."""
    return "".join(_rng.sample(CHARSET, length))


def is_valid_code(code, expected_length: int) -> bool:
    if not isinstance(code, str) or len(code) != expected_length:
        return False
    if not all(c in CHARSET for c in code):
        return False
    return len(set(code)) == len(code)


def generate_unique_code(length: int, taken: set[str], max_attempts: int = MAX_CODE_ATTEMPTS) -> str:
    """Code not in ``taken``; raises after max_attempts collisions."""
    for _ in range(max_attempts):
        code = generate_code(length)
        if code not in taken:
            return code
    raise SessionCodeExhausted(f"Unable to generate unique {length}-char code after {max_attempts} attempts")


@dataclass
class Session:
    code: str
    kind: str
    task: str
    session_id: str
    created_at: str
    last_activity: str
    status: str = "active"
    channel_id: str | None = None
    source: str | None = None
    agent_session_id: str | None = None
    ended_at: str | None = None
    external_task_id: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """JSON-file session store with lazy and swept expiry."""

    def __init__(
        self,
        path: str | Path,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.path = Path(path).expanduser()
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self.path.parent.mkdir(parents=True, exist_ok=True)

    # --- Persistence ---

    def _load(self) -> dict:
        if not self.path.exists():
            return {"sessions": [], "archive": [], "last_updated": None}
        try:
            data = json.loads(self.path.read_text())
            data.setdefault("sessions", [])
            data.setdefault("archive", [])
            return data
        except (OSError, ValueError) as e:
            logger.error("%s; starting with an empty session store", PersistenceCorruption(self.path, str(e)))
            return {"sessions": [], "archive": [], "last_updated": None}

    def _save(self, data: dict) -> None:
        data["last_updated"] = self._now_iso()
        data["archive"] = data["archive"][-MAX_ARCHIVE:]
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, self.path)

    def _now_iso(self) -> str:
        return self._clock().isoformat(timespec="microseconds")

    def _is_expired(self, session: dict, max_age_seconds: float) -> bool:
        last = parse_iso(session.get("last_activity"))
        if last is None:
            return True
        return (self._clock() - last).total_seconds() > max_age_seconds

    @staticmethod
    def _archive(data: dict, session: dict) -> None:
        data["sessions"] = [s for s in data["sessions"] if s["code"] != session["code"]]
        data["archive"].append(session)

    # --- Operations ---

    def create_session(
        self,
        kind: str,
        task: str,
        channel_id: str | None = None,
        code: str | None = None,
        source: str | None = None,
        external_task_id: str | None = None,
        code_length: int | None = None,
        reserved: set[str] | None = None,
    ) -> Session:
        """Create an active session, generating a code unless one is given.

        Generated codes use ``code_length`` or the length configured for ``kind``
        and avoid ``reserved`` (command names and aliases).
        """
        data = self._load()
        taken = {s["code"] for s in data["sessions"]}

        length = code_length or CODE_LENGTHS.get(kind, 3)
        reserved = reserved or set()
        if code is not None:
            if isinstance(code, str):
                code = code.lower()
            if not is_valid_code(code, length):
                raise ValidationError(f"Invalid session code: {code!r}")
            if code in taken:
                raise ValidationError(f"Session code already active: {code}")
            if code in reserved:
                raise ValidationError(f"Session code conflicts with a command: {code}")
        else:
            code = generate_unique_code(length, taken | reserved)

        now = self._now_iso()
        session = Session(
            code=code,
            kind=kind,
            task=task,
            session_id=f"session-{int(time.time() * 1000):x}-{secrets.token_hex(3)}",
            created_at=now,
            last_activity=now,
            channel_id=channel_id,
            source=source,
            external_task_id=external_task_id,
        )
        data["sessions"].append(session.to_dict())
        self._save(data)
        logger.info(f"Created {kind} session {code}")
        return session

    def get_by_code(self, code: str) -> Session | None:
        """Active, unexpired session or None; expired ones are archived."""
        data = self._load()
        for raw in data["sessions"]:
            if raw["code"] != code:
                continue
            if raw.get("status") != "active":
                return None
            if self._is_expired(raw, self.max_age_seconds):
                raw["status"] = "expired"
                self._archive(data, raw)
                self._save(data)
                logger.info(f"Session {code} expired on lookup")
                return None
            return Session.from_dict(raw)
        return None

    def list_active(self, kind: str | None = None) -> list[Session]:
        sessions = [Session.from_dict(s) for s in self._load()["sessions"] if s.get("status") == "active"]
        if kind:
            sessions = [s for s in sessions if s.kind == kind]
        return sessions

    def update_activity(self, code: str, **updates) -> Session | None:
        """Refresh last_activity and merge any extra fields."""
        data = self._load()
        for raw in data["sessions"]:
            if raw["code"] == code and raw.get("status") == "active":
                raw["last_activity"] = self._now_iso()
                raw.update(updates)
                self._save(data)
                return Session.from_dict(raw)
        return None

    def set_agent_session_id(self, code: str, agent_session_id: str) -> Session | None:
        return self.update_activity(code, agent_session_id=agent_session_id)

    def end_session(self, code: str) -> Session | None:
        """Archive an active session as ended."""
        data = self._load()
        for raw in data["sessions"]:
            if raw["code"] == code:
                raw["status"] = "ended"
                raw["ended_at"] = self._now_iso()
                self._archive(data, raw)
                self._save(data)
                logger.info(f"Ended session {code}")
                return Session.from_dict(raw)
        return None

    def expire_all(self, max_age_seconds: float | None = None) -> int:
        """Archive every session idle longer than max_age_seconds."""
        max_age = self.max_age_seconds if max_age_seconds is None else max_age_seconds
        data = self._load()
        expired = [s for s in data["sessions"] if self._is_expired(s, max_age)]
        for raw in expired:
            raw["status"] = "expired"
            self._archive(data, raw)
        if expired:
            self._save(data)
            logger.info(f"Expired {len(expired)} sessions")
        return len(expired)

    def archived(self) -> list[Session]:
        return [Session.from_dict(s) for s in self._load()["archive"]]

    def clear(self) -> None:
        self._save({"sessions": [], "archive": []})
