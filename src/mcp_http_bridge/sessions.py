import logging
from collections import deque
from dataclasses import dataclass, field

import anyio
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import StreamableHTTPServerTransport

logger = logging.getLogger(__name__)

# Retired ids kept for reuse checks; the oldest are forgotten past this
RETIRED_ID_LIMIT = 10_000


@dataclass
class Session:
    session_id: str
    server: Server
    transport: StreamableHTTPServerTransport
    # Set once the session's server loop has exited and its streams are closed
    closed: anyio.Event = field(default_factory=anyio.Event)


class SessionRegistry:
    """Owns every active session, keyed by session id.

    `insert`, `lookup` and `remove` are the only way in. Ids that have been
    removed are remembered, up to `retired_limit` of the most recent, so they
    cannot be bound to a new session.
    """

    def __init__(self, retired_limit: int = RETIRED_ID_LIMIT):
        self._sessions: dict[str, Session] = {}
        self._retired: set[str] = set()
        self._retired_order: deque[str] = deque()
        self._retired_limit = retired_limit

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def is_retired(self, session_id: str) -> bool:
        return session_id in self._retired

    def insert(self, session: Session) -> None:
        sid = session.session_id
        if sid in self._sessions or sid in self._retired:
            raise ValueError(f"Session id {sid!r} has already been issued")
        self._sessions[sid] = session
        logger.info("Session %s opened (%d active)", sid, len(self._sessions))

    def lookup(self, session_id: str | None) -> Session | None:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Session | None:
        session = self._sessions.pop(session_id, None)
        self._retire(session_id)
        if session is not None:
            logger.info("Session %s closed (%d active)", session_id, len(self._sessions))
        return session

    def drain(self) -> list[Session]:
        """Remove and return every active session."""
        drained = [self.remove(sid) for sid in list(self._sessions)]
        return [session for session in drained if session is not None]

    def _retire(self, session_id: str) -> None:
        if session_id in self._retired:
            return
        self._retired.add(session_id)
        self._retired_order.append(session_id)
        while len(self._retired_order) > self._retired_limit:
            self._retired.discard(self._retired_order.popleft())
