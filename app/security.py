from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.errors import forbidden, invalid_token
from app.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class AuthUser:
    id: int
    username: str
    role: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _build_claims(
    *,
    token_type: str,
    expires_delta: timedelta,
    user_id: int,
    username: str,
    role: str,
) -> dict[str, Any]:
    settings = get_settings()
    now = _utcnow()
    exp = now + expires_delta
    return {
        "sub": str(user_id),
        "username": username,
        "role": role,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
        "jti": str(uuid4()),
        "typ": token_type,
    }


def create_access_token(
    *,
    user_id: int,
    username: str,
    role: str = "employee",
    expires_delta: timedelta | None = None,
) -> tuple[str, int, dict[str, Any]]:
    settings = get_settings()
    lifetime = expires_delta or timedelta(minutes=settings.access_token_minutes)
    claims = _build_claims(
        token_type="access",
        expires_delta=lifetime,
        user_id=user_id,
        username=username,
        role=role,
    )
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, int(lifetime.total_seconds()), claims


def decode_token(token: str, *, expected_type: str = "access") -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise invalid_token("Token is invalid.") from exc

    if payload.get("typ") != expected_type:
        raise invalid_token("Token type is invalid.")

    return payload


def auth_user_from_claims(payload: dict[str, Any]) -> AuthUser:
    subject = payload.get("sub")
    try:
        user_id = int(subject)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise invalid_token("Token subject is invalid.") from exc
    if user_id < 1:
        raise invalid_token("Token subject is invalid.")

    return AuthUser(
        id=user_id,
        username=str(payload.get("username") or subject),
        role=str(payload.get("role") or "employee"),
    )


def require_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise invalid_token("Missing bearer token.")

    user = auth_user_from_claims(decode_token(credentials.credentials))

    request.state.actor = user.role
    request.state.actor_id = str(user.id)
    return user


def require_role(role: str) -> Callable[..., AuthUser]:
    def _dependency(user: AuthUser = Depends(require_user)) -> AuthUser:
        if user.role != role:
            raise forbidden()
        return user

    return _dependency
