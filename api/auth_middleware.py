"""
Authentication Middleware for FastAPI.

Validates session tokens and attaches user info to request state.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Callable, Optional, Set
import logging

logger = logging.getLogger(__name__)

SESSION_COOKIE = 'mailboard_session'


# Paths that don't require authentication
PUBLIC_PATHS: Set[str] = {
    '/api/health',
    '/docs',
    '/openapi.json',
    '/redoc',
}

# Path prefixes that don't require authentication
PUBLIC_PREFIXES: tuple = (
    '/docs',
    '/openapi',
    '/redoc',
)

# Paths that resolve the user if they can but answer anonymous callers themselves
OPTIONAL_AUTH_PATHS: Set[str] = {
    '/api/mail/oauth/callback',
}


def _extract_token(request: Request) -> str:
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        return auth_header[len('Bearer '):].strip()
    # Browser redirects (OAuth callback) carry the session in a cookie
    return request.cookies.get(SESSION_COOKIE, '')


class AuthMiddleware(BaseHTTPMiddleware):
    """Middleware to validate authentication tokens on protected routes."""

    def __init__(self, app, user_auth):
        super().__init__(app)
        self.user_auth = user_auth

    async def dispatch(self, request: Request, call_next: Callable):
        """Process the request, validating authentication if needed."""
        path = request.url.path
        request.state.user = None

        # Skip auth for public paths
        if path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES):
            return await call_next(request)

        # Skip auth for non-API paths (static files, etc.)
        if not path.startswith('/api/'):
            return await call_next(request)

        token = _extract_token(request)
        user = self.user_auth.validate_session(token) if token else None

        if path in OPTIONAL_AUTH_PATHS:
            request.state.user = user
            return await call_next(request)

        if not token:
            logger.warning(f"No auth token provided for {request.method} {path}")
            return JSONResponse(
                status_code=401,
                content={'error': 'Not authenticated', 'detail': 'No authentication token provided'}
            )

        if not user:
            logger.warning(f"Invalid or expired token for {request.method} {path}")
            return JSONResponse(
                status_code=401,
                content={'error': 'Invalid or expired session', 'detail': 'Please log in again'}
            )

        # Attach user to request state
        request.state.user = user
        return await call_next(request)


def get_current_user(request: Request) -> Optional[dict]:
    """Get the current authenticated user ({'id', 'email'}) from request state."""
    return getattr(request.state, 'user', None)
