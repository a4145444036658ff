"""
Starlette middleware running the authentication gate on bearer requests.
"""

from typing import Optional

from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Match

from oauth_server.errors import AuthChallenge
from oauth_server.gate import CONSUMER_ID_HEADER, AuthenticationGate, AuthRequest


def resolve_starlette_route(auth_request: AuthRequest) -> Optional[str]:
    """Name of the route matching the request, from the ASGI scope"""
    scope = auth_request.attributes.get("asgi_scope")
    if scope is None or "app" not in scope:
        return None
    for route in getattr(scope["app"], "routes", []):
        match, _ = route.matches(scope)
        if match == Match.FULL:
            return getattr(route, "name", None)
    return None


class OAuthBearerMiddleware(BaseHTTPMiddleware):
    """
    Authenticate bearer requests.

    Requests without a bearer token pass through untouched. A rejected token
    gets a 401 with a WWW-Authenticate challenge; an accepted one puts the
    Principal on ``request.state.oauth_principal``.
    """

    def __init__(self, app, gate: AuthenticationGate):
        super().__init__(app)
        self.gate = gate
        if self.gate.route_resolver is None:
            self.gate.route_resolver = resolve_starlette_route

    async def dispatch(self, request: Request, call_next):
        auth_request = AuthRequest(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            attributes={"asgi_scope": request.scope},
        )

        if not self.gate.applies(auth_request):
            return await call_next(request)

        result = self.gate.authenticate(auth_request)
        if isinstance(result, AuthChallenge):
            return JSONResponse(
                status_code=401,
                content={"error": result.error, "error_description": result.hint},
                headers={"WWW-Authenticate": result.header_value()},
            )

        request.state.oauth_principal = result
        request.state.consumer_id = result.client_id
        request.scope["headers"] = [
            (key, value) for key, value in request.scope["headers"]
            if key.lower() != CONSUMER_ID_HEADER.lower().encode("latin-1")
        ] + [(CONSUMER_ID_HEADER.lower().encode("latin-1"), result.client_id.encode("latin-1"))]

        logger.debug(f"[MIDDLEWARE] {request.method} {request.url.path} as client {result.client_id}")
        return await call_next(request)
