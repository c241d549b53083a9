"""JWT verification for identity-provider access tokens."""

from datetime import datetime, timedelta, timezone

from jose import jwt

from app.config import settings


def create_access_token(
    user_id: str, email: str | None = None, expires_delta: timedelta | None = None
) -> str:
    """Create a short-lived access token for a user.

    Tokens are normally minted by the identity provider; this exists for
    local development and tests, using the same shared secret.

    Args:
        user_id: The user's UUID as a string (becomes ``sub``).
        email: Optional email claim.
        expires_delta: Custom expiration duration. Defaults to
            ``settings.jwt_access_token_expire_minutes`` minutes.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    to_encode = {"sub": user_id, "exp": expire, "iat": now, "type": "access"}
    if email:
        to_encode["email"] = email
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Raises:
        jose.JWTError: If the token is invalid, expired, or malformed.
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
