# pact/transport/security.py
"""
Security helpers for the HTTP surface.

Collector / dispatcher identity arrives already authenticated from the
upstream gateway; only the admin routes are guarded here.
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pact.config import settings
from pact.infra.logging_config import get_logger

logger = get_logger(__name__)

# Security scheme for OpenAPI docs - shows "Authorize" button
bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Enter your admin token (without 'Bearer ' prefix)",
    auto_error=False,  # We handle errors ourselves for better messages
)


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings without leaking timing information."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Bearer-token admin authentication.

    Usage:
        @app.post("/admin/endpoint", dependencies=[Depends(require_admin_auth)])
        async def admin_endpoint():
            ...
    """
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable"
        )

    if credentials is None or not constant_time_compare(credentials.credentials, settings.admin_token):
        logger.warning("Admin auth failed", extra={"request_id": getattr(request.state, "request_id", None)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )


def sanitize_error_message(exc: Exception, is_production: bool) -> str:
    """Never leak internals (SQL, stack details) in production responses."""
    if is_production:
        return "Internal server error"
    return f"{exc.__class__.__name__}: {exc}"
