import hmac
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..context import RelayContext
from ..core.errors import TransientInfraError, UnauthorizedError
from ..core.logging import get_logger

logger = get_logger(__name__)

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)


def get_context(request: Request) -> RelayContext:
    context = getattr(request.app.state, "relay", None)
    if context is None:
        raise TransientInfraError("service is starting", code="not_ready")
    return context


def _check_bearer(
    credentials: Optional[HTTPAuthorizationCredentials], expected: Optional[str], scope: str
) -> None:
    # Authentication is disabled when no token is configured
    if not expected:
        return
    if credentials is None:
        logger.warning("auth.missing_credentials", scope=scope)
        raise UnauthorizedError("authentication required")
    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        logger.warning("auth.invalid_token", scope=scope)
        raise UnauthorizedError("invalid authentication credentials")


def require_api_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    context: RelayContext = Depends(get_context),
) -> None:
    """Guards mutating endpoints with ``Authorization: Bearer <API_KEY>``."""
    _check_bearer(credentials, context.settings.api_key, scope="api")


def require_ingest_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    context: RelayContext = Depends(get_context),
) -> None:
    _check_bearer(credentials, context.settings.ingest_token, scope="ingest")
