from typing import Optional

from fastapi import Header, HTTPException, Request, status


def get_services(request: Request):
    return request.app.state.services


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Identity is established upstream; the gateway forwards it as ``X-User-Id``."""
    user_id = (x_user_id or "").strip()
    if not user_id or len(user_id) > 64:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    return user_id
