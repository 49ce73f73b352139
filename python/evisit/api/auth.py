"""
Bearer-token authentication for staff endpoints.

Tokens are issued by the identity provider outside this service; here
they are only verified. The ``sub`` claim becomes the actor id and the
``role`` claim its UserRole.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from evisit.actors import Actor
from evisit.config_manager import SecurityConfig
from evisit.database.models import UserRole

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(
    subject: str,
    role: UserRole,
    config: SecurityConfig,
    expires_delta: timedelta = timedelta(hours=8),
    name: Optional[str] = None
) -> str:
    """Create a signed token; used by tests and local tooling."""
    now = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": subject,
        "role": role.value,
        "iat": now,
        "exp": now + expires_delta,
    }
    if name:
        claims["name"] = name
    return jwt.encode(claims, config.jwt_secret, algorithm=config.jwt_algorithm)


def decode_actor(token: str, config: SecurityConfig) -> Optional[Actor]:
    """
    Decode and validate a token.

    Returns:
        The Actor, or None for a bad signature, an expired token,
        a missing subject or an unknown role
    """
    try:
        claims = jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except JWTError as e:
        logger.warning("Token rejected: %s", e)
        return None

    subject = claims.get("sub")
    try:
        role = UserRole(claims.get("role"))
    except ValueError:
        logger.warning("Token carries unknown role: %s", claims.get("role"))
        return None
    if not subject or role == UserRole.SYSTEM:
        return None
    return Actor(id=str(subject), role=role, name=claims.get("name"))


def actor_dependency(get_security_config):
    """
    Build the FastAPI dependency that resolves the calling Actor.

    Args:
        get_security_config: Dependency returning the SecurityConfig in use
    """
    async def current_actor(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
        config: SecurityConfig = Depends(get_security_config),
    ) -> Actor:
        unauthorized = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
        if credentials is None:
            raise unauthorized
        actor = decode_actor(credentials.credentials, config)
        if actor is None:
            raise unauthorized
        return actor

    return current_actor
