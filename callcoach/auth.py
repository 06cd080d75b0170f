"""
CallCoach WebSocket Authentication
Bearer token (query ?token=... or Authorization: Bearer <token>) resolved to
a user id through the call repository. Anything else closes the socket with
1008 (policy violation) before a single message is read.
"""

import logging
from typing import Optional

from fastapi import WebSocket, status

from .exceptions import AuthenticationError

logger = logging.getLogger(__name__)


POLICY_VIOLATION = status.WS_1008_POLICY_VIOLATION


def extract_bearer_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token

    authorization = websocket.headers.get("authorization")
    if not authorization:
        return None

    # Extract token from "Bearer <token>"
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def resolve_user(websocket: WebSocket, repository) -> str:
    token = extract_bearer_token(websocket)
    if not token:
        raise AuthenticationError("Token required")

    user_id = await repository.get_user_id_by_token(token)
    if not user_id:
        raise AuthenticationError("Invalid token")
    return user_id


async def authenticate_websocket(websocket: WebSocket, repository) -> Optional[str]:
    """Returns the user id, or closes the socket (1008) and returns None"""
    try:
        return await resolve_user(websocket, repository)
    except AuthenticationError as e:
        logger.warning(f"WebSocket rejected: {e.message}")
        await websocket.close(code=POLICY_VIOLATION, reason=e.message)
        return None
