# upload_pipeline/middleware.py
import logging

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse

from upload_pipeline.core.config import AUTH_VERIFY_URL

logger = logging.getLogger(__name__)

# Reachable without a token
PUBLIC_PATHS = {"/", "/health", "/docs", "/openapi.json"}


class AuthMiddleware:
    """
    Bearer-token check against an external verification endpoint.

    Who may upload or finalize is decided by that service; this middleware only
    forwards the token and attaches the returned user to ``request.state``.
    """

    def __init__(self, app, verify_url: str | None = AUTH_VERIFY_URL):
        self.app = app
        self.verify_url = verify_url

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or not self.verify_url or scope["path"] in PUBLIC_PATHS:
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive=receive)
        auth_header = request.headers.get("authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            response = JSONResponse(
                {"detail": "Authorization header missing or invalid"},
                status_code=401,
            )
            await response(scope, receive, send)
            return

        token = auth_header.split(" ", 1)[1]

        async with httpx.AsyncClient() as client:
            try:
                resp = await client.post(self.verify_url, json={"access_token": token})
            except httpx.HTTPError as e:
                logger.error("Auth service unreachable: %s", e)
                response = JSONResponse(
                    {"detail": "Auth service unreachable"},
                    status_code=503,
                )
                await response(scope, receive, send)
                return

        if resp.status_code != 200:
            response = JSONResponse({"detail": "Token verification failed"}, status_code=resp.status_code)
            await response(scope, receive, send)
            return

        data = resp.json()
        if not data.get("valid"):
            response = JSONResponse(
                {"detail": "Invalid or expired token"}, status_code=401
            )
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})["user"] = {
            "id": data.get("user_id"),
            "email": data.get("email"),
        }

        await self.app(scope, receive, send)
