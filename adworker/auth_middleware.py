"""
Shared-secret authentication for operator endpoints.

Every /admin/* request needs an X-Worker-Secret header matching
WORKER_SHARED_SECRET. The web app's server routes attach it when proxying.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

WORKER_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")

PROTECTED_PREFIX = "/admin"


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /admin/* endpoints."""

    def __init__(self, app, secret: str = WORKER_SECRET, environment: str = ENVIRONMENT):
        super().__init__(app)
        self.secret = secret
        self.environment = environment

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(PROTECTED_PREFIX):
            return await call_next(request)

        if not self.secret:
            # Local development without a secret: allow everything
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
