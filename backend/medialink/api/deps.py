from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from medialink.core.context import CoreContext
from medialink.core.security import AuthenticatedPrincipal, principal_from_token

bearer_scheme = HTTPBearer(auto_error=False)


def get_context(request: Request) -> CoreContext:
    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
    return ctx


def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    ctx: CoreContext = Depends(get_context),
) -> AuthenticatedPrincipal:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    principal = principal_from_token(ctx.settings, credentials.credentials)
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return principal


def require_admin(principal: AuthenticatedPrincipal = Depends(get_principal)) -> AuthenticatedPrincipal:
    if not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return principal
