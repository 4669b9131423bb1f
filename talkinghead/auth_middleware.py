"""
Shared-secret authentication middleware for the training video worker.

Every POST under /training and /voices requires a valid X-Worker-Secret
header matching the WORKER_SHARED_SECRET environment variable. The web
app attaches this header when forwarding requests to the worker.
"""

import os
import secrets
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

WORKER_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")

PROTECTED_PREFIXES = ("/training", "/voices")


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests that start or preload generation work."""

    # Paths that are always public (health checks, etc.)
    PUBLIC_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, secret: str = None, environment: str = None):
        super().__init__(app)
        self.secret = WORKER_SECRET if secret is None else secret
        self.environment = environment or os.environ.get("ENVIRONMENT", "development")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS:
            return await call_next(request)

        # Status reads and the voice catalog stay open
        if request.method != "POST" or not path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
