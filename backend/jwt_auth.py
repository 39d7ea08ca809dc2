"""
JWT Authentication Module for the tracking console

Access tokens are issued by the unit's auth service; the console only
validates them (signature + expiry, CPU only) and reads the session claims.

Claims used:
    sub / user_id   - user id
    role            - unit role (Hebrew role names)
    username, full_name

Live tracking is restricted to command roles (LIVE_TRACKING_ROLES in
console_config). Everyone else gets 403 from the tracking routes and a
4003 close on /ws/map.

Delivery:
- API clients: Authorization: Bearer <token>
- WebSocket: ?token=<jwt> query parameter during handshake

DEPENDENCIES: PyJWT
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt  # PyJWT
from fastapi import Depends, HTTPException, Request

import console_config

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

# If not set, generates a random key (tokens invalidated on restart, fine for dev)
_default_secret = secrets.token_urlsafe(64)
JWT_SECRET = console_config.JWT_SECRET or _default_secret
if JWT_SECRET == _default_secret:
    logger.warning(
        "JWT secret not set in environment - using random key. "
        "Set CONSOLE_JWT_SECRET to accept tokens from the auth service."
    )

JWT_ALGORITHM = console_config.JWT_ALGORITHM
ACCESS_TOKEN_LIFETIME = timedelta(minutes=15)


# =============================================================================
# SESSION
# =============================================================================

@dataclass
class SessionUser:
    """Validated session claims."""
    id: str
    role: Optional[str] = None
    username: Optional[str] = None
    full_name: Optional[str] = None

    @classmethod
    def from_claims(cls, payload: dict) -> "SessionUser":
        user_id = payload.get("sub", payload.get("user_id"))
        if user_id is None:
            raise jwt.InvalidTokenError("Token has no subject")
        return cls(
            id=str(user_id),
            role=payload.get("role"),
            username=payload.get("username"),
            full_name=payload.get("full_name"),
        )

    @property
    def can_view_live_tracking(self) -> bool:
        return self.role in console_config.LIVE_TRACKING_ROLES


def create_access_token(
    user_id,
    role: Optional[str] = None,
    username: Optional[str] = None,
    full_name: Optional[str] = None,
    lifetime: timedelta = ACCESS_TOKEN_LIFETIME,
) -> str:
    """
    Create a signed JWT access token.

    Used by tests and by the field agent in development; production tokens
    come from the auth service.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "username": username,
        "full_name": full_name,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def validate_access_token(token: str) -> Optional[SessionUser]:
    """
    Validate a JWT access token by checking its signature and expiration.

    Returns:
        SessionUser if valid, None if invalid/expired.
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return SessionUser.from_claims(payload)
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid JWT: {e}")
        return None


# =============================================================================
# TOKEN EXTRACTION
# =============================================================================

def extract_token_from_request(request) -> Optional[str]:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


def extract_token_from_websocket_params(websocket) -> Optional[str]:
    """
    WebSocket connections pass the token as ?token=<jwt> during handshake
    because browsers cannot set headers on the upgrade request. Falls back
    to the Authorization header for non-browser clients.
    """
    token = websocket.query_params.get("token")
    if token:
        return token
    return extract_token_from_request(websocket)


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_current_user(request: Request) -> SessionUser:
    token = extract_token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = validate_access_token(token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


def require_live_tracking_role(user: SessionUser = Depends(get_current_user)) -> SessionUser:
    if not user.can_view_live_tracking:
        logger.info(f"User {user.id} with role '{user.role}' denied live tracking access")
        raise HTTPException(status_code=403, detail="Live tracking is restricted to command roles")
    return user
