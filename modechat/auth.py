"""
Local bearer token authentication for modechat.

Supports both Authorization: Bearer <token> and X-API-Key: <token>.
With no token configured the server runs in single-user local mode.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

from fastapi import Header, Request

from modechat.errors import InvalidInput, Unauthenticated
from modechat.orchestrator import Identity
from modechat.settings import settings

logger = logging.getLogger("modechat.auth")

_MAX_TOKEN_LENGTH = 1000
LOCAL_USER_ID = "local-user"


class UserSession:
    """The authenticated caller."""

    def __init__(self, user_data: Dict[str, Any]):
        self.id = str(user_data.get("id", LOCAL_USER_ID))
        self.name = user_data.get("name", "Local User")


def _load_users() -> Dict[str, Dict[str, Any]]:
    """Token → user record, from MODECHAT_USERS_FILE plus MODECHAT_AUTH_TOKEN."""
    users: Dict[str, Dict[str, Any]] = {}
    users_file = settings.USERS_FILE
    if users_file and os.path.exists(users_file):
        try:
            with open(users_file, encoding="utf-8") as f:
                users.update(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load users file %s: %s", users_file, e)

    token = settings.AUTH_TOKEN
    if token and token not in users:
        users[token] = {"id": LOCAL_USER_ID, "name": "Local User"}
    return users


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def validate_local_auth(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> UserSession:
    """
    Validate a local bearer token or API key.

    Accepts either:
      - Authorization: Bearer <token>
      - X-API-Key: <token>
    """
    token: Optional[str] = None
    if authorization:
        token = authorization.removeprefix("Bearer ").strip()
    elif x_api_key:
        token = x_api_key.strip()

    if token and len(token) > _MAX_TOKEN_LENGTH:
        raise InvalidInput("Invalid token format.")

    users = _load_users()
    if not users:
        return UserSession({"id": LOCAL_USER_ID})

    if not token:
        raise Unauthenticated(
            "Missing auth token. Send Authorization: Bearer <token> or X-API-Key: <token>"
        )

    user_data = users.get(token)
    if user_data is None:
        raise Unauthenticated("Invalid auth token.")
    return UserSession(user_data)


async def current_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Identity:
    """Authenticated user plus client address, for rate limiting and storage."""
    user = await validate_local_auth(authorization, x_api_key)
    ip = client_ip(request)
    logger.debug("Request from %s (%s) at %s", user.name, user.id, ip)
    return Identity(user_id=user.id, ip=ip)
