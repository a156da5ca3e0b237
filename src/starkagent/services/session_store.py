import logging
from typing import Dict

from ..models import Message, SessionState

logger = logging.getLogger(__name__)


class SessionStore:
    """In-memory, per-session message logs with a retention window."""

    def __init__(self, history_window: int = 100) -> None:
        self._sessions: Dict[str, SessionState] = {}
        self._history_window = history_window

    def get_session(self, session_id: str) -> SessionState:
        """Return or create the SessionState for the given session_id."""
        if session_id not in self._sessions:
            self._sessions[session_id] = SessionState(session_id=session_id)
        return self._sessions[session_id]

    def append(self, session: SessionState, *messages: Message) -> None:
        session.messages.extend(messages)
        self._trim(session)

    def _trim(self, session: SessionState) -> None:
        """Drop the oldest messages beyond the window.

        A tool result is never left at the head of the log without the
        assistant message that requested it, and the latest user message
        is always kept.
        """
        window = self._history_window
        if window <= 0 or len(session.messages) <= window:
            return
        start = len(session.messages) - window
        while start < len(session.messages) and session.messages[start].role == "tool":
            start += 1
        last_user = max(
            (i for i, m in enumerate(session.messages) if m.role == "user"), default=None
        )
        if last_user is not None:
            start = min(start, last_user)
        dropped = start
        del session.messages[:start]
        logger.debug("Session %s: dropped %d old messages", session.session_id, dropped)
