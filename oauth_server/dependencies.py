"""
FastAPI dependencies for routes protected by OAuthBearerMiddleware.
"""

from fastapi import Depends, HTTPException, Request
from loguru import logger

from oauth_server.gate import Principal

# ==================== DEPENDENCY FUNCTIONS ====================


async def get_principal(request: Request) -> Principal:
    """
    Dependency: Principal established by the middleware.
    """
    principal = getattr(request.state, "oauth_principal", None)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": 'Bearer realm="OAuth"'},
        )
    return principal


def require_scopes(*required_scopes: str):
    """
    Dependency factory: Require every listed scope on the token.
    """
    async def _require_scopes(principal: Principal = Depends(get_principal)) -> Principal:
        missing = [scope for scope in required_scopes if not principal.has_scope(scope)]
        if missing:
            logger.warning(f"Client {principal.client_id} missing scopes {missing}")
            raise HTTPException(
                status_code=403,
                detail=f"Scopes {missing} required"
            )
        return principal

    return _require_scopes


def require_permission(required_permission: str):
    """
    Dependency factory: Require a permission conferred by the token's scopes.
    """
    async def _require_permission(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_permission(required_permission):
            logger.warning(f"Client {principal.client_id} denied permission: {required_permission}")
            raise HTTPException(
                status_code=403,
                detail=f"Permission '{required_permission}' required"
            )
        return principal

    return _require_permission
