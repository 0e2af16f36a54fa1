from typing import Optional

from fastapi import APIRouter, Query, WebSocket, status

from seatsync.realtime.handlers import SeatSocketHandler

router = APIRouter()


@router.get("/")
async def realtime_root():
    return {"module": "realtime", "status": "ok"}


@router.websocket("/ws")
async def seat_socket(websocket: WebSocket, user_id: Optional[str] = Query(None)):
    user_id = (websocket.headers.get("x-user-id") or user_id or "").strip()
    if not user_id or len(user_id) > 64:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    handler = SeatSocketHandler(websocket.app.state.services)
    await handler.serve(websocket, user_id)
