from typing import Optional

from fastapi import Header, HTTPException, Request, status
from pydantic import ValidationError

from estate_messaging.schemas.messaging import Identity
from estate_messaging.services.session_registry import SessionRegistry


def identity_from_values(user_id: Optional[str], email: Optional[str], is_admin: Optional[str] = None) -> Identity:
    if not user_id or not email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        return Identity(id=user_id, email=email, is_admin=(is_admin or "").lower() == "true")
    except ValidationError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid identity")


# Sessions are authenticated upstream; the gateway forwards who the caller is.
async def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_admin: Optional[str] = Header(default=None),
) -> Identity:
    return identity_from_values(x_user_id, x_user_email, x_user_admin)


def get_sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions
