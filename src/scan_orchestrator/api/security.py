"""Shared-secret authorization for worker trigger endpoints."""

from __future__ import annotations

import logging
import secrets

from fastapi import HTTPException, Request, status

from scan_orchestrator.config import Settings

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def is_authorized(settings: Settings, authorization: str | None) -> bool:
    """Development mode bypasses the check; otherwise the bearer must match."""

    if settings.worker.is_development:
        return True
    secret = settings.worker.cron_secret
    if not secret or not authorization or not authorization.startswith(BEARER_PREFIX):
        return False
    return secrets.compare_digest(authorization[len(BEARER_PREFIX) :].strip(), secret)


def require_worker_auth(request: Request) -> None:
    settings: Settings = request.app.state.runtime.settings
    if not is_authorized(settings, request.headers.get("Authorization")):
        logger.warning("Rejected unauthorized worker trigger from %s", _client_host(request))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"
