# context.py
# Context Store: ordered conversation messages per session.
#
# append() is the only mutation besides trim(). A tool-result must answer a
# tool call of an earlier assistant message, otherwise the session would
# present the backend with an orphaned reference.
#
# trim() evicts whole units, oldest first: an assistant message carrying
# tool calls travels together with its tool-results. The leading system
# message is never evicted.

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from tool_harness.errors import ContextCorruption, SessionBusy, SessionNotFound
from tool_harness.models import Message, Role, Session
from tool_harness.storage import SessionStore

logger = logging.getLogger(__name__)

Estimator = Callable[[list[Message]], int]


def count_messages(messages: list[Message]) -> int:
    return len(messages)


def estimate_tokens(messages: list[Message]) -> int:
    """Rough token estimate: four characters per token plus per-message overhead."""
    total = 0
    for message in messages:
        chars = len(message.content or "")
        for call in message.tool_calls:
            chars += len(call.name) + len(str(call.arguments))
        total += chars // 4 + 4
    return total


def _units(messages: list[Message]) -> list[list[Message]]:
    """Group messages so a tool-call message and its results form one unit."""
    units: list[list[Message]] = []
    open_units: dict[str, list[Message]] = {}
    for message in messages:
        if message.role is Role.TOOL_RESULT and message.tool_call_id in open_units:
            open_units[message.tool_call_id].append(message)
            continue
        unit = [message]
        units.append(unit)
        for call in message.tool_calls:
            open_units[call.id] = unit
    return units


class ContextStore:
    """
    Owns every live Session. Safe to share across threads; each session is
    written by at most one execution loop at a time (see lease()).
    """

    def __init__(self, store: SessionStore | None = None) -> None:
        self._sessions: dict[str, Session] = {}
        self._leases: set[str] = set()
        self._lock = threading.RLock()
        self._store = store

    @property
    def store(self) -> SessionStore | None:
        return self._store

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, name: str = "", system_prompt: str | None = None) -> Session:
        session = Session(name=name.strip())
        if system_prompt:
            session.messages.append(Message.system(system_prompt))
        with self._lock:
            self._sessions[session.id] = session
        logger.debug("created session %s (%s)", session.short_id, session.name or "unnamed")
        return session

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"No live session '{session_id}'.")
        return session

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    @contextmanager
    def lease(self, session_id: str) -> Iterator[Session]:
        """Exclusive writer access for one execution loop."""
        with self._lock:
            session = self.get(session_id)
            if session_id in self._leases:
                raise SessionBusy(f"Session {session.short_id} is already running.")
            self._leases.add(session_id)
        try:
            yield session
        finally:
            with self._lock:
                self._leases.discard(session_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def append(self, session_id: str, message: Message) -> None:
        with self._lock:
            session = self.get(session_id)
            if message.role is Role.TOOL_RESULT:
                self._check_correlation(session, message)
            session.messages.append(message)
            session.updated_at = datetime.now(timezone.utc)

    def snapshot(self, session_id: str) -> list[Message]:
        with self._lock:
            return list(self.get(session_id).messages)

    def trim(self, session_id: str, budget: int, estimator: Estimator = count_messages) -> int:
        """
        Drop the oldest non-system units until `estimator` fits `budget`.
        Returns the number of messages removed.
        """
        with self._lock:
            session = self.get(session_id)
            messages = session.messages
            head = [messages[0]] if messages and messages[0].role is Role.SYSTEM else []
            units = _units(messages[len(head):])

            kept = list(messages)
            while units and estimator(kept) > budget:
                units.pop(0)
                kept = head + [m for unit in units for m in unit]

            removed = len(messages) - len(kept)
            if removed:
                session.messages = kept
                logger.info("trimmed %d message(s) from session %s", removed, session.short_id)
            return removed

    @staticmethod
    def _check_correlation(session: Session, message: Message) -> None:
        known = {call.id for m in session.messages for call in m.tool_calls}
        if message.tool_call_id not in known:
            raise ContextCorruption(
                f"tool-result references unknown tool call '{message.tool_call_id}'."
            )
        answered = {m.tool_call_id for m in session.messages if m.role is Role.TOOL_RESULT}
        if message.tool_call_id in answered:
            raise ContextCorruption(f"tool call '{message.tool_call_id}' already has a result.")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _require_store(self) -> SessionStore:
        if self._store is None:
            raise SessionNotFound("No session store configured.")
        return self._store

    def save(self, session_id: str) -> str:
        with self._lock:
            session = self.get(session_id).model_copy(deep=True)
        key = self._require_store().save(session)
        logger.info("saved session %s as %s", session.short_id, key)
        return key

    def load(self, prefix: str) -> Session:
        session = self._require_store().load(prefix)
        with self._lock:
            if session.id in self._leases:
                raise SessionBusy(f"Session {session.short_id} is running; cannot reload it.")
            self._sessions[session.id] = session
        return session

    def delete(self, prefix: str) -> Session:
        session = self._require_store().delete(prefix)
        with self._lock:
            if session.id not in self._leases:
                self._sessions.pop(session.id, None)
        return session

    def list_sessions(self) -> list[Session]:
        return self._require_store().list()
