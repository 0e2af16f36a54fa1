from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from seatsync.realtime.connection_manager import ConnectionManager
from seatsync.services.scope_registry import Scope

DAY = date(2026, 3, 10)
OTHER_DAY = date(2026, 3, 11)


def mock_socket():
    ws = MagicMock()
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    return ws


class TestConnectionManager:
    @pytest.fixture
    def manager(self):
        return ConnectionManager()

    @pytest.mark.asyncio
    async def test_broadcast_is_filtered_by_date(self, manager):
        same_day, other_day, route_wide = mock_socket(), mock_socket(), mock_socket()
        for ws, day in ((same_day, DAY), (other_day, OTHER_DAY), (route_wide, None)):
            session = await manager.connect(ws, "u")
            manager.join(session, 1, day)

        sent = await manager.broadcast(1, DAY, "msg")

        assert sent == 2
        same_day.send_text.assert_called_once_with("msg")
        route_wide.send_text.assert_called_once_with("msg")
        other_day.send_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_each_connection_gets_an_event_once(self, manager):
        ws = mock_socket()
        session = await manager.connect(ws, "u")
        manager.join(session, 1, DAY)
        manager.join(session, 1, DAY)

        await manager.broadcast(1, DAY, "msg")

        ws.send_text.assert_called_once_with("msg")

    @pytest.mark.asyncio
    async def test_join_moves_between_routes(self, manager):
        session = await manager.connect(mock_socket(), "u")
        assert manager.join(session, 1, DAY) is None

        previous = manager.join(session, 2, None)

        assert previous == Scope(1, DAY)
        assert manager.member_count(1) == 0
        assert manager.member_count(2) == 1
        assert 1 not in manager.group_connections

    @pytest.mark.asyncio
    async def test_member_count_by_date(self, manager):
        for day in (DAY, DAY, OTHER_DAY, None):
            manager.join(await manager.connect(mock_socket(), "u"), 1, day)

        assert manager.member_count(1) == 4
        assert manager.member_count(1, DAY) == 3
        assert manager.member_count(1, OTHER_DAY) == 2

    @pytest.mark.asyncio
    async def test_dead_socket_is_dropped_from_channel(self, manager):
        dead, alive = mock_socket(), mock_socket()
        dead.send_text.side_effect = RuntimeError("closed")
        for ws in (dead, alive):
            manager.join(await manager.connect(ws, "u"), 1, DAY)

        assert await manager.broadcast(1, DAY, "msg") == 1
        assert manager.member_count(1) == 1

    @pytest.mark.asyncio
    async def test_exclude_skips_the_sender(self, manager):
        ws_a, ws_b = mock_socket(), mock_socket()
        a = await manager.connect(ws_a, "a")
        b = await manager.connect(ws_b, "b")
        manager.join(a, 1, DAY)
        manager.join(b, 1, DAY)

        await manager.broadcast(1, DAY, "count", exclude=a)

        ws_a.send_text.assert_not_called()
        ws_b.send_text.assert_called_once_with("count")

    @pytest.mark.asyncio
    async def test_disconnect_forgets_session(self, manager):
        ws = mock_socket()
        manager.join(await manager.connect(ws, "u"), 3, DAY)

        session = manager.disconnect(ws)

        assert session.user_id == "u"
        assert session.route_id is None
        assert manager.watched_scopes() == []

    @pytest.mark.asyncio
    async def test_watched_scopes(self, manager):
        manager.join(await manager.connect(mock_socket(), "a"), 1, DAY)
        manager.join(await manager.connect(mock_socket(), "b"), 1, DAY)
        manager.join(await manager.connect(mock_socket(), "c"), 2, None)

        assert manager.watched_scopes() == [Scope(1, DAY), Scope(2)]
