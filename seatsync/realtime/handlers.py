"""Dispatch of client actions received on the seat WebSocket.

Every client message ``{id, action, data}`` gets exactly one ack back to the
sender. Successful state changes additionally reach every channel member
through the broadcaster.
"""
import json
import logging
from typing import Optional
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from seatsync.clock import isoformat
from seatsync.errors import InvalidInput, SeatSyncError
from seatsync.logging_setup import TRACE_ID_CTX, USER_ID_CTX
from seatsync.realtime.connection_manager import ConnectionSession
from seatsync.realtime.protocol import ActionType, MessageType, encode
from seatsync.schemas.booking import ConfirmBookingRequest
from seatsync.schemas.realtime import ClientMessage, JoinRequest, SeatsRequest
from seatsync.schemas.seat import HoldManyRequest, HoldRequest, ReleaseRequest
from seatsync.services.scope_registry import Scope

logger = logging.getLogger(__name__)


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ()))
    return f"{where}: {first.get('msg')}" if where else first.get("msg", "invalid request")


class SeatSocketHandler:
    def __init__(self, services):
        self.services = services
        self.connections = services.connections
        self.broadcaster = services.broadcaster
        self.holds = services.holds
        self._actions = {
            ActionType.JOIN: self._join,
            ActionType.LEAVE: self._leave,
            ActionType.SEATS: self._seats,
            ActionType.HOLD: self._hold,
            ActionType.HOLD_MANY: self._hold_many,
            ActionType.RELEASE: self._release,
            ActionType.CONFIRM: self._confirm,
            ActionType.HOLDS: self._user_holds,
            ActionType.PING: self._ping,
            ActionType.INFO: self._info,
        }

    async def serve(self, websocket: WebSocket, user_id: str) -> None:
        USER_ID_CTX.set(user_id)
        session = await self.connections.connect(websocket, user_id)
        logger.info("socket connected")
        await self._send(session, {"type": MessageType.CONNECTED, "data": {"userId": user_id}})
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_raw(session, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self.on_disconnect(session)

    async def handle_raw(self, session: ConnectionSession, raw: str) -> dict:
        TRACE_ID_CTX.set(uuid4().hex)
        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("message must be a JSON object")
        except ValueError:
            ack = self._ack(None, None, error=InvalidInput("malformed message"))
            await self._send(session, ack)
            return ack
        return await self.handle_message(session, payload)

    async def handle_message(self, session: ConnectionSession, payload: dict) -> dict:
        msg_id, action = payload.get("id"), payload.get("action")
        try:
            message = ClientMessage.model_validate(payload)
            handler = self._actions.get(message.action)
            if handler is None:
                raise InvalidInput(f"unknown action: {message.action}")
            ack = self._ack(msg_id, action, data=await handler(session, dict(message.data)))
        except ValidationError as exc:
            ack = self._ack(msg_id, action, error=InvalidInput(_validation_message(exc)))
        except SeatSyncError as exc:
            ack = self._ack(msg_id, action, error=exc)
        except Exception:
            logger.exception("socket action %s failed", action)
            ack = self._ack(msg_id, action, error=SeatSyncError("internal error"))
        await self._send(session, ack)
        return ack

    @staticmethod
    def _ack(msg_id, action, data=None, error: Optional[SeatSyncError] = None) -> dict:
        ack = {"type": MessageType.ACK, "id": msg_id, "action": action, "success": error is None}
        if error is None:
            ack["data"] = data
        else:
            ack.update(error.to_dict())
        return ack

    async def _send(self, session: ConnectionSession, message: dict) -> None:
        try:
            await session.websocket.send_text(encode(message))
        except Exception:
            # the receive loop notices the close and cleans up
            logger.info("could not reply on closed socket")

    @staticmethod
    def _with_scope_defaults(session: ConnectionSession, data: dict) -> dict:
        if session.route_id is not None:
            data.setdefault("scopeId", session.route_id)
        if session.departure_date is not None:
            data.setdefault("date", session.departure_date.isoformat())
        return data

    # -- channel membership -----------------------------------------------

    async def _join(self, session: ConnectionSession, data: dict) -> dict:
        req = JoinRequest.model_validate(data)
        info = await self.holds.resolve_scope(req.scope_id)
        previous = self.connections.join(session, info.route_id, req.departure_date)
        if previous is not None and previous != Scope(info.route_id, req.departure_date):
            # holds stay with the user across routes
            await self.broadcaster.member_count(previous.route_id, previous.departure_date)

        scope = Scope(info.route_id, req.departure_date)
        now = self.holds.clock()
        await self.services.scopes.touch([scope], now)
        await self.services.sweeper.sweep_scope(scope)

        result = {"scopeId": info.route_id, "date": req.departure_date.isoformat() if req.departure_date else None}
        if req.departure_date is not None:
            result["snapshot"] = await self.services.projector.snapshot(
                info.vehicle_id, req.departure_date, session.user_id
            )
        result["memberCount"] = await self.broadcaster.member_count(
            info.route_id, req.departure_date, exclude=session
        )
        logger.info("joined route %s date %s", info.route_id, req.departure_date)
        return result

    async def _leave(self, session: ConnectionSession, data: dict) -> dict:
        if session.route_id is None:
            raise InvalidInput("not in a channel")
        route_id, departure_date = session.route_id, session.departure_date
        released = await self._release_session_holds(session, session.holds_in_route(route_id))
        self.connections.leave(session)
        await self.broadcaster.member_count(route_id, departure_date)
        return {"scopeId": route_id, "released": [label for _, _, label in released]}

    async def on_disconnect(self, session: ConnectionSession) -> None:
        route_id, departure_date = session.route_id, session.departure_date
        self.connections.disconnect(session.websocket)
        released = await self._release_session_holds(session, sorted(session.holds))
        if route_id is not None:
            await self.broadcaster.member_count(route_id, departure_date)
        logger.info("socket disconnected, released %s holds", len(released))

    async def _release_session_holds(self, session: ConnectionSession, holds) -> list:
        if not holds:
            return []
        released = await self.holds.release_all(session.user_id, holds)
        session.holds.difference_update(holds)
        return released

    # -- seat actions ------------------------------------------------------

    async def _seats(self, session: ConnectionSession, data: dict) -> dict:
        req = SeatsRequest.model_validate(self._with_scope_defaults(session, data))
        info = await self.holds.resolve_scope(req.scope_id)
        snapshot = await self.services.projector.snapshot(info.vehicle_id, req.departure_date, session.user_id)
        return {"scopeId": info.route_id, "date": req.departure_date.isoformat(), "snapshot": snapshot}

    async def _hold(self, session: ConnectionSession, data: dict) -> dict:
        req = HoldRequest.model_validate(self._with_scope_defaults(session, data))
        outcome = await self.holds.hold(
            session.user_id, req.scope_id, req.seat_label, req.departure_date, req.duration_override
        )
        session.holds.add((req.scope_id, req.departure_date, req.seat_label))
        return {
            "seatLabel": outcome.seat_label,
            "status": outcome.status,
            "expiresAt": isoformat(outcome.expires_at),
            "extended": outcome.extended,
        }

    async def _hold_many(self, session: ConnectionSession, data: dict) -> dict:
        req = HoldManyRequest.model_validate(self._with_scope_defaults(session, data))
        result = await self.holds.hold_many(
            session.user_id,
            req.scope_id,
            req.seat_labels,
            req.departure_date,
            duration_minutes=req.duration_override,
            all_or_nothing=req.all_or_nothing,
        )
        for outcome in result.held:
            session.holds.add((req.scope_id, req.departure_date, outcome.seat_label))
        return {
            "held": [
                {"seatLabel": o.seat_label, "expiresAt": isoformat(o.expires_at), "extended": o.extended}
                for o in result.held
            ],
            "failed": result.failed,
            "rolledBack": result.rolled_back,
        }

    async def _release(self, session: ConnectionSession, data: dict) -> dict:
        req = ReleaseRequest.model_validate(self._with_scope_defaults(session, data))
        result = await self.holds.release(session.user_id, req.scope_id, req.seat_label, req.departure_date)
        session.holds.discard((req.scope_id, req.departure_date, req.seat_label))
        return result

    async def _confirm(self, session: ConnectionSession, data: dict) -> dict:
        req = ConfirmBookingRequest.model_validate(self._with_scope_defaults(session, data))
        result = await self.services.finalizer.finalize(session.user_id, req.to_leg(), payment_ref=req.payment_ref)
        for label in result.confirmed_seats:
            session.holds.discard((req.scope_id, req.departure_date, label))
        return result.to_dict()

    async def _user_holds(self, session: ConnectionSession, data: dict) -> dict:
        holds = await self.holds.user_holds(session.user_id)
        return {
            "holds": [
                {
                    "vehicleId": ref.vehicle_id,
                    "date": ref.departure_date.isoformat(),
                    "seatLabel": ref.seat_label,
                    "expiresAt": isoformat(hold.expires_at),
                }
                for ref, hold in holds
            ]
        }

    async def _ping(self, session: ConnectionSession, data: dict) -> dict:
        return {"pong": True, "timestamp": isoformat(self.holds.clock())}

    async def _info(self, session: ConnectionSession, data: dict) -> dict:
        return {
            "userId": session.user_id,
            "scopeId": session.route_id,
            "date": session.departure_date.isoformat() if session.departure_date else None,
            "heldSeats": len(session.holds),
        }
