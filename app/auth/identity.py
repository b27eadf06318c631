"""Caller identity.

Authentication happens upstream (API gateway); requests reach this service
with the authenticated user's id in the ``X-User-Id`` header.
"""

import uuid

from fastapi import Header, HTTPException

USER_ID_HEADER = "X-User-Id"


async def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
) -> uuid.UUID:
    if not x_user_id:
        raise HTTPException(status_code=401, detail=f"Missing {USER_ID_HEADER} header")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Malformed {USER_ID_HEADER} header")


def require_self(current_user_id: uuid.UUID, user_id: uuid.UUID) -> None:
    if current_user_id != user_id:
        raise HTTPException(status_code=403, detail="Can only access own wallet")
