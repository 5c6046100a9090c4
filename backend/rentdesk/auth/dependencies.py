## File: backend/rentdesk/auth/dependencies.py
# Request dependencies for authentication and role checks.
# get_current_user resolves the bearer token to an active user row;
# require_role guards the staff-only endpoints.

from typing import Any, List

from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from rentdesk.common.enums import UserStatus
from rentdesk.common.utils import extract
from rentdesk.core.security import decode_token
from rentdesk.db.prisma_client import db, prisma_session

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def require_role(allowed_roles: List[str]):
    def wrapper(user):
        role = extract(user, "role")
        if getattr(role, "value", role) not in allowed_roles:
            raise HTTPException(status_code=403, detail="Permission denied")
        return user
    return wrapper


async def resolve_user(token: str) -> Any:
    """Return the active user a token belongs to, raising ``HTTPException`` otherwise."""

    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Could not validate credentials")

    email = payload.get("sub")
    role = payload.get("role")
    if email is None or role is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    async with prisma_session(db) as client:
        user = await client.user.find_unique(where={"email": email})

    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    status = extract(user, "status")
    if getattr(status, "value", status) != UserStatus.ACTIVE.value:
        raise HTTPException(status_code=403, detail="Account is disabled")

    return user


async def get_current_user(token: str = Depends(oauth2_scheme)):
    return await resolve_user(token)
