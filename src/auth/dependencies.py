"""FastAPI dependencies resolving the calling actor and identity oracle."""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from src.auth.jwt import AuthContext
from src.auth.middleware import AUTH_CONTEXT_KEY, REQUEST_CONTEXT_KEY, SCHEDULER_KEY_HEADER
from src.control.audit import RequestContext
from src.control.privileged import Actor
from src.core.config import get_settings
from src.core.errors import BattleError
from src.identity.oracle import DatabaseIdentityOracle
from src.storage.db import get_session


def get_optional_auth_context(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, AUTH_CONTEXT_KEY, None)


def get_request_context(request: Request) -> RequestContext:
    return getattr(request.state, REQUEST_CONTEXT_KEY, None) or RequestContext()


def _is_scheduler_call(request: Request) -> bool:
    provided = request.headers.get(SCHEDULER_KEY_HEADER)
    if provided is None:
        return False
    expected = get_settings().scheduler_internal_key.strip()
    if not expected or not secrets.compare_digest(provided.strip(), expected):
        raise BattleError("service_key_invalid")
    return True


def get_actor(
    request: Request,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    request_context: RequestContext = Depends(get_request_context),
) -> Actor:
    """Anonymous callers still get an Actor so the refusal is audited as auth_required."""

    return Actor(
        user_id=auth.user_id if auth else None,
        is_service=_is_scheduler_call(request),
        request_context=request_context,
    )


def get_identity_oracle(session: Session = Depends(get_session)) -> DatabaseIdentityOracle:
    return DatabaseIdentityOracle(session)
