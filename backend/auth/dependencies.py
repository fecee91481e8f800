"""
FastAPI dependencies that turn a bearer JWT into the acting identity.

get_current_user resolves the User row; get_current_actor wraps it into the
immutable Actor (role plus active team facts) that the core operations take.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from auth.permissions import Actor, actor_for_user
from auth.security import decode_access_token
from database import get_db
from models import User

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Extract and validate the current user from a JWT bearer token.

    Raises:
        HTTPException: 401 if authentication fails, 403 for inactive users

    Example:
        @app.get("/api/protected")
        async def protected_route(user: User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    if not credentials or not credentials.credentials:
        logger.info("No authentication credentials provided")
        raise _unauthorized("Not authenticated")

    claims = decode_access_token(credentials.credentials)
    if claims is None:
        raise _unauthorized("Invalid or expired token")

    user = db.query(User).filter(User.id == claims.user_id).first()
    if user is None:
        logger.info(f"User not found for id: {claims.user_id}")
        raise _unauthorized("User not found")

    if not user.is_active:
        logger.info(f"Inactive user attempted access: {claims.user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    logger.debug(f"User authenticated via JWT: {user.email}")
    return user


async def get_current_actor(current_user: User = Depends(get_current_user)) -> Actor:
    """Actor for the authenticated user, with role and active team memberships."""
    actor = actor_for_user(current_user)
    logger.debug(
        f"Resolved actor {actor.user_id} role={actor.role.value} "
        f"teams={sorted(actor.team_ids)} led={sorted(actor.led_team_ids)}"
    )
    return actor
