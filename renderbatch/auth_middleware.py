"""
Shared-secret authentication for the batch API.

Requests that change batches (POST / DELETE under /batches) need an
X-Worker-Secret header matching WORKER_SHARED_SECRET. The Vercel API routes
attach it when forwarding requests. Reads stay open.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import config

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated writes to /batches."""

    def __init__(self, app, secret: str = config.WORKER_SHARED_SECRET, environment: str = config.ENVIRONMENT):
        super().__init__(app)
        self.secret = secret
        self.environment = environment

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith("/batches") or request.method not in MUTATING_METHODS:
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
