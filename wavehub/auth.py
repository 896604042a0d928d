"""
Access token handling shared with the REST API.

Tokens are HS256 JWTs: header.payload.signature, base64url encoded.
The payload carries userId/sub, username, exp, iat, iss, jti and type.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Optional

import jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wavehub.storage import get_user

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity resolved from a valid token and the users table."""
    user_id: int
    username: str


def clean_token(raw: Optional[str]) -> str:
    """Strip a 'Bearer ' prefix and quotes some clients wrap the token in."""
    if not raw:
        return ""
    token = raw.strip()
    if token.startswith("Bearer "):
        token = token[len("Bearer "):]
    return token.replace('"', "").replace("'", "").strip()


def create_access_token(
    user_id: int,
    username: str,
    secret: str,
    algorithm: str = "HS256",
    issuer: str = "SecureWave",
    expire_days: int = 7,
    now: Optional[int] = None,
) -> str:
    """
    Issue a token in the same format as the REST API login endpoint.

    Args:
        user_id: Numeric user id (also stored as string 'sub')
        username: Display username
        secret: HMAC secret
        now: Issue time in unix seconds, defaults to the current time

    Returns:
        Encoded JWT string
    """
    issued_at = int(now if now is not None else time.time())
    payload = {
        "exp": issued_at + expire_days * 24 * 60 * 60,
        "iat": issued_at,
        "iss": issuer,
        "jti": f"{user_id}_{issued_at}{random.randint(0, 999):03d}",
        "sub": str(user_id),
        "type": "access",
        "username": username,
        "userId": int(user_id),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


class TokenVerifier:
    """
    Verifies access tokens and resolves them to a user row.

    Signature, algorithm and expiry are checked by PyJWT. The issuer is not
    enforced, tokens from older API builds carry no 'iss'.
    """

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self._secret = secret
        self._algorithm = algorithm

    def decode(self, token: str) -> Optional[dict]:
        """
        Validate a token.

        Returns:
            The payload with 'userId' normalized to int, or None if invalid.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["exp"], "verify_aud": False},
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid token: {e}")
            return None

        user_id = payload.get("userId", payload.get("sub"))
        try:
            payload["userId"] = int(user_id)
        except (TypeError, ValueError):
            logger.warning(f"Token carries no usable user id: {user_id!r}")
            return None
        return payload

    def authenticate(self, db: Session, raw_token: Optional[str]) -> Optional[AuthenticatedUser]:
        """
        Resolve a bearer token to the user it was issued for.

        Returns:
            AuthenticatedUser, or None if the token is invalid, the user no
            longer exists or the user store is unavailable.
        """
        token = clean_token(raw_token)
        if not token:
            return None

        payload = self.decode(token)
        if payload is None:
            return None

        try:
            user = get_user(db, payload["userId"])
        except SQLAlchemyError as e:
            logger.error(f"User lookup failed during authentication: {e}")
            return None

        if user is None:
            logger.warning(f"User not found for token: {payload['userId']}")
            return None

        logger.info(f"Token resolved to user {user.username} (ID: {user.id})")
        return AuthenticatedUser(user_id=user.id, username=user.username)
