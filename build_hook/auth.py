from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional

from fastapi import HTTPException, Request, status


logger = logging.getLogger(__name__)

MISSING_HEADER = "Unauthorized: Missing Authorization header"
BAD_FORMAT = "Unauthorized: Invalid Authorization header format. Expected 'Bearer <token>'"
BAD_TOKEN = "Unauthorized: Invalid or missing bearer token"


@dataclass(frozen=True)
class CurrentUser:
    # short digest of the token, safe to log
    fingerprint: str


@dataclass(frozen=True)
class RequestContext:
    """Per-request data filled in by authentication and handed to the handlers."""

    user: CurrentUser
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


def parse_bearer(header_value: str) -> Optional[str]:
    scheme, _, token = header_value.strip().partition(" ")
    token = token.strip()
    if scheme.lower() == "bearer" and token:
        return token
    return None


def token_fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:8]


def authorize(token: str, allowed: Iterable[str]) -> Optional[CurrentUser]:
    matched = False
    for candidate in allowed:
        if hmac.compare_digest(candidate.encode("utf-8"), token.encode("utf-8")):
            matched = True
    if not matched:
        return None
    return CurrentUser(fingerprint=token_fingerprint(token))


def require_user(request: Request) -> RequestContext:
    """FastAPI dependency guarding the trigger route."""
    header_value = request.headers.get("authorization")
    if header_value is None:
        logger.warning("Missing Authorization header")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=MISSING_HEADER)

    token = parse_bearer(header_value)
    if token is None:
        logger.warning("Invalid Authorization header format")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=BAD_FORMAT)

    user = authorize(token, request.app.state.settings.bearer_tokens)
    if user is None:
        logger.warning("Invalid bearer token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=BAD_TOKEN)

    context = RequestContext(user=user)
    logger.debug("Authorized request %s (token %s)", context.request_id, user.fingerprint)
    return context
