"""Identity verification for relay clients.

Credentials are HS256 JSON Web Tokens issued by the account service with a
``{"userId", "username"}`` payload. This module only verifies them; issuing
tokens and hashing passwords happen elsewhere.
"""
import logging
from typing import Optional

import jwt
from pydantic import BaseModel, Field

from app.config import AppConfig

logger = logging.getLogger(__name__)


class AuthFailure(Exception):
    """Raised when a credential is missing or cannot be verified."""


class Identity(BaseModel):
    """A verified user identity attached to a connection or request."""
    userId: str = Field(..., min_length=1, description="User ID")
    username: str = Field(..., min_length=1, description="Username")


class IdentityVerifier:
    """Turns an opaque credential into an :class:`Identity`.

    Args:
        secret_key: Shared signing secret.
        algorithm: JWT signing algorithm (default HS256).
        cookie_name: Cookie carrying the token on browser requests.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256", cookie_name: str = "token") -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.cookie_name = cookie_name

    @classmethod
    def from_config(cls, config: AppConfig) -> "IdentityVerifier":
        return cls(
            config.secrets.jwt.secret_key,
            config.secrets.jwt.algorithm,
            config.auth.cookie_name,
        )

    def verify(self, token: Optional[str]) -> Identity:
        """Verify *token* and return the identity it carries.

        Raises:
            AuthFailure: If the token is missing, expired, badly signed, or
                lacks a user id / username.
        """
        if not token:
            raise AuthFailure("no token")

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthFailure("token expired")
        except jwt.InvalidTokenError as e:
            raise AuthFailure(f"invalid token: {e}")

        user_id = payload.get("userId")
        username = payload.get("username")
        if not user_id or not username:
            raise AuthFailure("token payload lacks userId/username")

        return Identity(userId=str(user_id), username=str(username))


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None
