"""Authentication middleware helpers."""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from src.auth.jwt import AuthContext, decode_access_token


AUTH_CONTEXT_KEY = "auth_context"
REQUEST_CONTEXT_KEY = "request_context"
SCHEDULER_KEY_HEADER = "x-arena-scheduler-key"


def _extract_bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization")
    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_auth_context(request: Request) -> Optional[AuthContext]:
    token = _extract_bearer_token(request)
    if not token:
        return None

    try:
        return decode_access_token(token)
    except HTTPException:
        return None


def resolve_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for", "")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip

    if request.client and request.client.host:
        return request.client.host
    return "unknown"
