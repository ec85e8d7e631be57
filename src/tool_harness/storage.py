# storage.py
# Session persistence at the boundary with external storage.
#
# Key = session name / id prefix, value = serialized Session. The core only
# needs save, load-by-prefix, list and delete with exact-match-or-NotFound
# semantics; where and how sessions live is up to the store.

import logging
import os
import re
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from tool_harness.errors import AmbiguousSession, SessionNotFound
from tool_harness.models import Session

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def save(self, session: Session) -> str: ...

    def load(self, prefix: str) -> Session: ...

    def list(self) -> list[Session]: ...

    def delete(self, prefix: str) -> Session: ...


def sanitize_name(name: str) -> str:
    """Lowercase slug: alphanumerics and single dashes only."""
    cleaned = re.sub(r"[^0-9a-z -]", "-", name.strip().lower())
    return "-".join(cleaned.split()).strip("-")


def _matches(prefix: str, session: Session, key: str = "") -> bool:
    lowered = prefix.lower()
    return (
        (bool(key) and key.startswith(prefix))
        or (bool(session.name) and session.name.lower().startswith(lowered))
        or session.id.startswith(prefix)
    )


def _select(prefix: str, candidates: list[tuple[Session, str]]) -> tuple[Session, str]:
    prefix = prefix.strip()
    if not prefix:
        raise SessionNotFound("Empty session key.")

    exact = [c for c in candidates if c[0].id == prefix or c[1] == prefix]
    if len(exact) == 1:
        return exact[0]

    found = [c for c in candidates if _matches(prefix, c[0], c[1])]
    if not found:
        raise SessionNotFound(f"No session found matching '{prefix}'.")
    if len(found) > 1:
        names = ", ".join(f"{s.name or 'unnamed'} ({key})" for s, key in found)
        raise AmbiguousSession(f"Ambiguous prefix '{prefix}'. {len(found)} matches: {names}")
    return found[0]


# ---------------------------------------------------------------------------
# JSON files on disk
# ---------------------------------------------------------------------------


class JsonSessionStore:
    """One pretty-printed JSON file per session, `<timestamp>_<slug>_<shortid>.json`."""

    def __init__(self, directory: str | os.PathLike) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def filename(self, session: Session) -> str:
        timestamp = session.created_at.astimezone().strftime("%Y%m%dT%H%M")
        slug = sanitize_name(session.name) or "unnamed"
        return f"{timestamp}_{slug}_{session.short_id}.json"

    def _existing(self, session: Session) -> Path | None:
        matches = sorted(self._dir.glob(f"*_{session.short_id}.json"))
        for path in matches:
            loaded = self._read(path)
            if loaded is not None and loaded.id == session.id:
                return path
        return None

    def _read(self, path: Path) -> Session | None:
        try:
            return Session.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("skipping unreadable session file %s: %s", path.name, exc)
            return None

    def _entries(self) -> list[tuple[Session, str]]:
        entries = []
        for path in sorted(self._dir.glob("*.json")):
            session = self._read(path)
            if session is not None:
                entries.append((session, path.name))
        return entries

    def save(self, session: Session) -> str:
        path = self._existing(session) or self._dir / self.filename(session)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)
        return path.name

    def load(self, prefix: str) -> Session:
        session, _ = _select(prefix, self._entries())
        return session

    def list(self) -> list[Session]:
        return sorted((s for s, _ in self._entries()), key=lambda s: s.created_at, reverse=True)

    def delete(self, prefix: str) -> Session:
        session, key = _select(prefix, self._entries())
        (self._dir / key).unlink()
        logger.info("deleted session file %s", key)
        return session


# ---------------------------------------------------------------------------
# In memory
# ---------------------------------------------------------------------------


class MemorySessionStore:
    """Process-local store; keys are session ids."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def save(self, session: Session) -> str:
        self._data[session.id] = session.model_dump_json()
        return session.id

    def _entries(self) -> list[tuple[Session, str]]:
        return [(Session.model_validate_json(raw), key) for key, raw in self._data.items()]

    def load(self, prefix: str) -> Session:
        session, _ = _select(prefix, self._entries())
        return session

    def list(self) -> list[Session]:
        return sorted((s for s, _ in self._entries()), key=lambda s: s.created_at, reverse=True)

    def delete(self, prefix: str) -> Session:
        session, key = _select(prefix, self._entries())
        del self._data[key]
        return session
