from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request
from jose import JWTError, jwt

from .config import Settings, settings as default_settings
from .errors import Unauthenticated

logger = logging.getLogger(__name__)


def extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def decode_user_id(token: str, settings: Settings = default_settings) -> Optional[str]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.debug("token decode failed: %s", e)
        return None
    sub = payload.get("sub")
    return str(sub) if sub else None


def get_current_user_id_from_request(
    request: Request, settings: Settings = default_settings
) -> Optional[str]:
    """Decode JWT from Authorization header and return user id (sub).

    Only the header form is accepted: Authorization: Bearer <token>
    """
    token = extract_bearer_token(request)
    if not token:
        logger.debug("no token found in request")
        return None
    return decode_user_id(token, settings)


def require_user_id(request: Request) -> str:
    """FastAPI dependency: the authenticated caller."""
    user_id = get_current_user_id_from_request(request)
    if not user_id:
        raise Unauthenticated("invalid or missing token")
    return user_id
