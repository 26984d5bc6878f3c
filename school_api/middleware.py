import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status

from .config import settings
from .database import Database, get_database
from .models import UserRole
from .security import AuthError, decode_access_token


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    id: int
    phone: str
    role: str


def _parse_token(auth_header: str | None) -> str:
    if not auth_header:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token, please log in")
    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid auth scheme")
    return parts[1].strip()


async def get_current_user(
    authorization: str | None = Header(default=None, alias="Authorization"),
    db: Database = Depends(get_database),
) -> CurrentUser:
    token = _parse_token(authorization)
    try:
        payload = decode_access_token(token)
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    try:
        result = await asyncio.wait_for(
            db.execute("SELECT id, phone, role, is_active FROM users WHERE id = $1", [payload["user_id"]]),
            settings.auth_lookup_timeout_s,
        )
    except asyncio.TimeoutError as exc:
        logger.error(f"Auth user lookup timed out after {settings.auth_lookup_timeout_s}s")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Authentication temporarily unavailable"
        ) from exc

    user = result.first()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if not user["is_active"]:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account suspended")
    return CurrentUser(id=user["id"], phone=user["phone"], role=user["role"])


def require_roles(*allowed_roles: UserRole) -> Callable:
    allowed = {role.value for role in allowed_roles}

    async def dependency(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role privileges")
        return current_user

    return dependency
