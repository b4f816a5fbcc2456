"""Request identity.

Session handling lives in the web frontend; the API trusts the user id it
forwards in the X-User-Id header.
"""
from typing import Optional

from fastapi import Header

from gamerhub.core.errors import UnauthorizedError


async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("Unauthorized")
    return x_user_id.strip()
