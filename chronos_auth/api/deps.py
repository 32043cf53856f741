"""API dependencies - authentication and authorization"""

from typing import Callable, Union

from fastapi import Depends, Request

from chronos_auth.core.exceptions import AuthenticationRequiredError
from chronos_auth.schemas.auth import AuthContext, AuthUser, Role
from chronos_auth.services.permissions import permission_service


def get_auth_context(request: Request) -> AuthContext:
    """
    Resolve the caller from the access token or the demo headers

    Returns:
        AuthContext, anonymous when nothing valid was presented
    """
    return permission_service.get_context(request)


def get_current_user(context: AuthContext = Depends(get_auth_context)) -> AuthUser:
    """
    Get current authenticated user

    Raises:
        AuthenticationRequiredError: If the request carries no identity
    """
    if not context.is_authenticated or context.user is None:
        raise AuthenticationRequiredError()
    return context.user


def require_role(role: Union[Role, str]) -> Callable[..., AuthContext]:
    """
    Dependency factory: caller's role must rank at or above ``role``

    Usage:
        @router.get("/stats", dependencies=[Depends(require_role(Role.ADMIN))])
    """
    required = Role(role)

    def dependency(request: Request) -> AuthContext:
        return permission_service.require_role(request, required)

    return dependency
