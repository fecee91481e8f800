"""
Bearer token verification.

Tokens are minted by the identity service in front of this backend. Here
they are only decoded and reduced to the claims the task engine needs to
build an Actor: the user id.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from jose import JWTError, jwt

import config

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class TokenClaims:
    user_id: int


def decode_access_token(token: str) -> Optional[TokenClaims]:
    """
    Verify an access token and extract the acting user's id.

    Returns None for a bad signature, an expired token, a refresh (or other
    non-access) token, or a missing / non-integer `sub` claim.
    """
    try:
        payload = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except JWTError as e:
        logger.info(f"JWT verification failed: {str(e)}")
        return None

    token_type = payload.get("type")
    if token_type != ACCESS_TOKEN_TYPE:
        logger.info(f"Rejected token of type {token_type!r}")
        return None

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        logger.info(f"Invalid sub claim in token: {payload.get('sub')!r}")
        return None

    return TokenClaims(user_id=user_id)
