"""
Session lifecycle management.
One session per WebSocket connection; it owns the call orchestrator and the
conversation history for that connection.
"""
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from logging_setup import get_logger, Component
from totem_pipeline.orchestrator import CallOrchestrator

logger = get_logger(Component.SESSION)


class SessionState(str, Enum):
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class Session:
    """Represents one client connection."""

    session_id: str
    created_at: datetime
    history_limit: int = 20
    state: SessionState = SessionState.CONNECTED
    orchestrator: Optional[CallOrchestrator] = None
    history: Deque[Dict[str, str]] = field(init=False)
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.session_id:
            raise ValueError("session_id is required")
        if self.history_limit < 1:
            raise ValueError("history_limit must be positive")
        self.history = deque(maxlen=self.history_limit)

    def add_exchange(self, user_message: str, assistant_message: str) -> None:
        """Append one user/assistant pair; the oldest entries fall off."""
        self.history.append({"role": "user", "content": user_message})
        self.history.append({"role": "assistant", "content": assistant_message})

    def clear_history(self) -> None:
        self.history.clear()

    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "history_length": len(self.history),
            "call": self.orchestrator.get_status() if self.orchestrator else None,
        }


class SessionManager:
    """Tracks the live sessions of this process."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def create_session(self, history_limit: int = 20) -> Session:
        """session_id is opaque and does not encode anything about the client."""
        session = Session(
            session_id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc),
            history_limit=history_limit,
        )
        self._sessions[session.session_id] = session
        logger.with_session(session.session_id).info("Session created", history_limit=history_limit)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def list_sessions(self, state: Optional[SessionState] = None) -> List[Session]:
        sessions = list(self._sessions.values())
        if state:
            sessions = [s for s in sessions if s.state == state]
        return sessions

    def close_session(self, session_id: str) -> Optional[Session]:
        """Mark the session closed and forget it. Returns the session, if it existed."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.state = SessionState.CLOSED
            session.closed_at = datetime.now(timezone.utc)
            session.orchestrator = None
            session.clear_history()
            logger.with_session(session_id).info("Session closed")
        return session

