"""API key authentication for gateway routes."""
from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from .config import Settings, get_settings
from .errors import AuthenticationError
from .telemetry import get_correlation_id

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> str:
    """Reject requests that do not carry the configured ``X-API-Key``."""

    correlation_id = get_correlation_id()
    client_host = request.client.host if request.client else None
    if not api_key:
        logger.warning("API key missing", extra={"ip": client_host})
        raise AuthenticationError("API key required", correlation_id)

    expected = settings.api_key or ""
    if not expected or not secrets.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("Invalid API key", extra={"ip": client_host})
        raise AuthenticationError("Invalid API key", correlation_id)

    return api_key
