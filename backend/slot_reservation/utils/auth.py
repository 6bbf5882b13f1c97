from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import jwt
from jwt import InvalidTokenError


class TokenError(ValueError):
    """Bearer token could not be trusted."""


def create_access_token(
    *,
    user_id: int,
    secret: str,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
    issuer: Optional[str] = None,
) -> str:
    issued_at = datetime.now(timezone.utc)
    claims: dict[str, object] = {
        "sub": str(user_id),
        "iat": issued_at,
        "exp": issued_at + (expires_delta or timedelta(minutes=30)),
    }
    if issuer:
        claims["iss"] = issuer
    return jwt.encode(claims, secret, algorithm=algorithm)


def decode_access_token(
    token: str,
    *,
    secret: str,
    algorithms: Sequence[str],
    issuer: Optional[str] = None,
    leeway_seconds: int = 0,
) -> int:
    """Return the user id carried in ``sub``; raise TokenError otherwise."""
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=list(algorithms),
            issuer=issuer,
            leeway=leeway_seconds,
            options={"require": ["exp", "sub"]},
        )
    except InvalidTokenError as exc:
        raise TokenError(str(exc) or "invalid token") from exc

    try:
        return int(claims["sub"])
    except (TypeError, ValueError) as exc:
        raise TokenError("token subject is not a user id") from exc
