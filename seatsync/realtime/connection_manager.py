import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Set, Tuple

from fastapi import WebSocket

from seatsync.metrics import WS_CONNECTIONS
from seatsync.services.scope_registry import Scope

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ConnectionSession:
    """Per-socket state: who is connected, where they are watching, what they hold."""

    websocket: WebSocket
    user_id: str
    route_id: Optional[int] = None
    departure_date: Optional[date] = None
    # (route_id, departure_date, seat_label) acquired through this connection
    holds: Set[Tuple[int, date, str]] = field(default_factory=set)

    def holds_in_route(self, route_id: int) -> List[Tuple[int, date, str]]:
        return sorted(h for h in self.holds if h[0] == route_id)

    def wants(self, route_id: int, departure_date: Optional[date]) -> bool:
        if self.route_id != route_id:
            return False
        # route-wide viewers see every date
        return self.departure_date is None or departure_date is None or self.departure_date == departure_date


class ConnectionManager:
    """Local (this process) WebSocket membership: one channel per route."""

    def __init__(self):
        self.group_connections: Dict[int, Set[ConnectionSession]] = {}
        self.sessions: Dict[WebSocket, ConnectionSession] = {}

    async def connect(self, websocket: WebSocket, user_id: str) -> ConnectionSession:
        await websocket.accept()
        session = ConnectionSession(websocket=websocket, user_id=user_id)
        self.sessions[websocket] = session
        WS_CONNECTIONS.set(len(self.sessions))
        return session

    def join(self, session: ConnectionSession, route_id: int, departure_date: Optional[date]) -> Optional[Scope]:
        """Move the session into a route channel. Returns the scope it left, if any."""
        previous = self.leave(session)
        session.route_id = route_id
        session.departure_date = departure_date
        self.group_connections.setdefault(route_id, set()).add(session)
        return previous

    def leave(self, session: ConnectionSession) -> Optional[Scope]:
        if session.route_id is None:
            return None
        previous = Scope(session.route_id, session.departure_date)
        group = self.group_connections.get(session.route_id)
        if group is not None:
            group.discard(session)
            # Clean up empty groups
            if not group:
                del self.group_connections[session.route_id]
        session.route_id = None
        session.departure_date = None
        return previous

    def disconnect(self, websocket: WebSocket) -> Optional[ConnectionSession]:
        session = self.sessions.pop(websocket, None)
        if session is not None:
            self.leave(session)
        WS_CONNECTIONS.set(len(self.sessions))
        return session

    async def broadcast(
        self,
        route_id: int,
        departure_date: Optional[date],
        data: str,
        exclude: Optional[ConnectionSession] = None,
    ) -> int:
        """Send to every member of the route channel that watches ``departure_date``."""
        group = self.group_connections.get(route_id)
        if not group:
            return 0

        sent = 0
        disconnected = []
        for session in list(group):
            if session is exclude or not session.wants(route_id, departure_date):
                continue
            try:
                await session.websocket.send_text(data)
                sent += 1
            except Exception:
                logger.info("dropping unreachable socket for user %s", session.user_id)
                disconnected.append(session)

        # Clean up disconnected sockets; the endpoint releases their holds when its receive loop ends
        for session in disconnected:
            self.leave(session)
        return sent

    def member_count(self, route_id: int, departure_date: Optional[date] = None) -> int:
        group = self.group_connections.get(route_id, set())
        if departure_date is None:
            return len(group)
        return sum(1 for s in group if s.departure_date is None or s.departure_date == departure_date)

    def watched_scopes(self) -> List[Scope]:
        scopes = set()
        for route_id, group in self.group_connections.items():
            for session in group:
                scopes.add(Scope(route_id, session.departure_date))
        return sorted(scopes, key=lambda s: s.member)
