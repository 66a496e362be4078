"""JWT issue/verify primitives for actor authentication."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

import jwt
from fastapi import HTTPException, status

from src.core.config import get_settings


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    session_id: Optional[str] = None


def create_access_token(context: AuthContext) -> tuple[str, int]:
    settings = get_settings()
    expires_in = settings.access_token_exp_minutes * 60
    now = datetime.now(timezone.utc)
    payload = {
        "sub": context.user_id,
        "sid": context.session_id or str(uuid.uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, expires_in


def decode_access_token(token: str) -> AuthContext:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        session_id = payload.get("sid")
        return AuthContext(
            user_id=str(payload["sub"]),
            session_id=str(session_id) if session_id else None,
        )
    except (jwt.PyJWTError, KeyError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from exc
