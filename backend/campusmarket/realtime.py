"""In-process fan-out of chat events to live sessions.

Rooms are keyed by conversation id and hold session ids. Membership is
ephemeral and best-effort: a participant who is not joined when an event is
published never sees it here and picks the message up from the store instead.

Each session owns an outbox queue that its transport drains. `publish`
enqueues synchronously, so events in one room reach every member in publish
order.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Set
from uuid import uuid4

from fastapi import Request

from .errors import NotFound

log = logging.getLogger("uvicorn.error")


class Session:
    def __init__(self, identity_id: str, session_id: Optional[str] = None) -> None:
        self.session_id = session_id or uuid4().hex
        self.identity_id = identity_id
        self.outbox: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self.rooms: Set[str] = set()
        self.closed = False

    def deliver(self, event: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        self.outbox.put_nowait(event)
        return True

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            # None tells the transport writer to stop
            self.outbox.put_nowait(None)

    def drain(self) -> list:
        """Events queued so far, without waiting."""
        out = []
        while not self.outbox.empty():
            event = self.outbox.get_nowait()
            if event is not None:
                out.append(event)
        return out


class RealtimeHub:
    def __init__(self) -> None:
        self.rooms: Dict[str, Set[str]] = {}
        self.sessions: Dict[str, Session] = {}

    def register(self, session: Session) -> Session:
        self.sessions[session.session_id] = session
        return session

    def _session(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound("unknown realtime session")
        return session

    def join(self, session_id: str, conversation_id: str) -> bool:
        """Add a session to a room. Returns False when it was already a member."""
        session = self._session(session_id)
        room = self.rooms.setdefault(conversation_id, set())
        if session_id in room:
            return False
        room.add(session_id)
        session.rooms.add(conversation_id)
        log.info("Session %s (%s) joined conversation %s", session_id, session.identity_id, conversation_id)
        return True

    def leave(self, session_id: str, conversation_id: str) -> None:
        room = self.rooms.get(conversation_id)
        if room is not None:
            room.discard(session_id)
            if not room:
                self.rooms.pop(conversation_id, None)
        session = self.sessions.get(session_id)
        if session is not None:
            session.rooms.discard(conversation_id)

    def members(self, conversation_id: str) -> Set[str]:
        return set(self.rooms.get(conversation_id, ()))

    def publish(
        self,
        conversation_id: str,
        event: Dict[str, Any],
        origin_session_id: Optional[str] = None,
        sender_id: Optional[str] = None,
    ) -> int:
        """Queue `event` for every session in the room except the author.

        The author is the origin session when it is known, otherwise every
        session of `sender_id`. Returns how many sessions the event was queued for.
        """
        delivered = 0
        for sid in list(self.rooms.get(conversation_id, ())):
            if sid == origin_session_id:
                continue
            session = self.sessions.get(sid)
            if session is None:
                continue
            if origin_session_id is None and sender_id is not None and session.identity_id == sender_id:
                continue
            if session.deliver(event):
                delivered += 1
            else:
                self.disconnect(sid)
        return delivered

    def disconnect(self, session_id: str) -> None:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return
        for conversation_id in list(session.rooms):
            self.leave(session_id, conversation_id)
        session.close()
        log.info("Session %s (%s) disconnected", session_id, session.identity_id)

    def close(self) -> None:
        for session_id in list(self.sessions):
            self.disconnect(session_id)
        self.rooms.clear()


def get_hub(request: Request) -> RealtimeHub:
    return request.app.state.hub
