"""Role-based permissions, feature flags and plan usage limits."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from starlette.requests import HTTPConnection

from chronos_auth.core.exceptions import (
    AuthenticationRequiredError,
    FeatureUnavailableError,
    PermissionDeniedError,
    RoleRequiredError,
    UsageLimitExceededError,
)
from chronos_auth.schemas.auth import ROLE_HIERARCHY, AuthContext, FeatureSummary, Role, UsageResult
from chronos_auth.services.auth_service import AuthService, auth_service
from chronos_auth.services.user_directory import UserDirectory, user_directory

logger = logging.getLogger(__name__)

ROLE_PERMISSIONS: Dict[Role, List[str]] = {
    Role.USER: [
        "workspace:read:own",
        "workspace:create:limited",
        "block:read:own",
        "block:create:limited",
        "block:update:own",
        "block:delete:own",
        "goal:read:own",
        "goal:create:limited",
        "habit:read:own",
        "habit:create:limited",
        "export:basic",
        "integration:basic",
    ],
    Role.PREMIUM: [
        "workspace:read:own",
        "workspace:create:unlimited",
        "workspace:share",
        "block:read:own",
        "block:create:unlimited",
        "block:update:own",
        "block:delete:own",
        "block:archive",
        "goal:read:own",
        "goal:create:unlimited",
        "goal:share",
        "habit:read:own",
        "habit:create:unlimited",
        "habit:share",
        "analytics:advanced",
        "export:unlimited",
        "integration:unlimited",
        "ai:suggestions",
        "ai:planning",
        "collaboration:advanced",
        "templates:premium",
    ],
    Role.ADMIN: ["*"],
}

_PLAN_FEATURES = (
    "ai-suggestions",
    "collaboration",
    "premium-templates",
    "premium-analytics",
    "custom-integrations",
    "priority-support",
)
_ADMIN_FEATURES = ("team-management", "audit-logs", "system-admin")

FEATURE_FLAGS: Dict[Role, Dict[str, bool]] = {
    Role.USER: {name: False for name in _PLAN_FEATURES + _ADMIN_FEATURES},
    Role.PREMIUM: {
        **{name: True for name in _PLAN_FEATURES},
        **{name: False for name in _ADMIN_FEATURES},
    },
    Role.ADMIN: {name: True for name in _PLAN_FEATURES + _ADMIN_FEATURES},
}

# None means unlimited
USAGE_LIMITS: Dict[Role, Dict[str, Optional[int]]] = {
    Role.USER: {"workspaces": 3, "blocks": 100, "goals": 10, "habits": 5},
    Role.PREMIUM: {"workspaces": 25, "blocks": 5000, "goals": 100, "habits": 50},
    Role.ADMIN: {"workspaces": None, "blocks": None, "goals": None, "habits": None},
}


def role_has_permission(role: Role, permission: str) -> bool:
    """Exact match, ``*`` or a ``resource:*`` wildcard"""
    granted = ROLE_PERMISSIONS.get(role, ROLE_PERMISSIONS[Role.USER])
    if "*" in granted or permission in granted:
        return True
    resource = permission.split(":", 1)[0]
    return f"{resource}:*" in granted


def role_satisfies(role: Role, required: Role) -> bool:
    return ROLE_HIERARCHY[role] >= ROLE_HIERARCHY[required]


class PermissionService:
    """Authorization over the identity resolved by :class:`AuthService`"""

    def __init__(self, auth: AuthService, directory: Optional[UserDirectory] = None) -> None:
        self._auth = auth
        self._directory = directory

    def get_context(self, request: HTTPConnection) -> AuthContext:
        """Auth context for the request, resolved once and cached on request.state"""
        context = getattr(request.state, "auth_context", None)
        if context is None:
            context = self._auth.get_auth_context(request)
            request.state.auth_context = context
        return context

    def get_user_role(self, context: AuthContext) -> Role:
        """Stored role, else the role carried in the token, else user"""
        if context.user is None:
            return Role.USER

        if self._directory is not None and not context.is_demo:
            try:
                stored = self._directory.get_role(context.user.id)
            except Exception as exc:
                logger.error(f"Role lookup failed for user {context.user.id}: {exc}")
                stored = None
            if stored is not None:
                return stored

        return context.user.role or Role.USER

    def has_permission(self, request: HTTPConnection, permission: str) -> bool:
        context = self.get_context(request)
        if not context.is_authenticated:
            return False
        return role_has_permission(self.get_user_role(context), permission)

    def has_feature(self, request: HTTPConnection, feature: str) -> bool:
        context = self.get_context(request)
        if not context.is_authenticated:
            return False
        flags = FEATURE_FLAGS.get(self.get_user_role(context), FEATURE_FLAGS[Role.USER])
        return bool(flags.get(feature, False))

    def get_feature_limits(self, request: HTTPConnection) -> Dict[str, Optional[int]]:
        context = self.get_context(request)
        if not context.is_authenticated:
            return dict(USAGE_LIMITS[Role.USER])
        return dict(USAGE_LIMITS[self.get_user_role(context)])

    def get_feature_summary(self, request: HTTPConnection) -> FeatureSummary:
        context = self.get_context(request)
        role = self.get_user_role(context) if context.is_authenticated else Role.USER
        return FeatureSummary(
            role=role,
            features=dict(FEATURE_FLAGS[role]),
            limits=dict(USAGE_LIMITS[role]),
            permissions=list(ROLE_PERMISSIONS[role]),
        )

    def can_access(
        self,
        request: HTTPConnection,
        resource: str,
        action: str,
        owner_id: Optional[str] = None,
    ) -> bool:
        """``resource:action`` permission; ``:own`` permissions also require ownership"""
        permission = f"{resource}:{action}"
        if not self.has_permission(request, permission):
            return False

        if ":own" in permission and owner_id is not None:
            context = self.get_context(request)
            return context.user is not None and context.user.id == owner_id
        return True

    def check_usage_limits(self, request: HTTPConnection, resource: str) -> UsageResult:
        """
        Compare the live count of ``resource`` owned by the caller with the
        plan limit. A failing count query denies.
        """
        context = self.get_context(request)
        if not context.is_authenticated or context.user is None:
            return UsageResult(allowed=False, current=0, limit=0, remaining=0)

        limits = USAGE_LIMITS[self.get_user_role(context)]
        if resource not in limits:
            return UsageResult(allowed=True, current=0, limit=None, remaining=None)

        limit = limits[resource]
        if limit is None:
            return UsageResult(allowed=True, current=0, limit=None, remaining=None)

        if self._directory is None:
            logger.error("No user directory configured; denying usage of %s", resource)
            return UsageResult(allowed=False, current=0, limit=limit, remaining=0)

        try:
            current = self._directory.count_resources(context.user.id, resource)
        except Exception as exc:
            logger.error(f"Usage count failed for user {context.user.id} resource {resource}: {exc}")
            return UsageResult(allowed=False, current=0, limit=limit, remaining=0)

        remaining = max(0, limit - current)
        return UsageResult(allowed=remaining > 0, current=current, limit=limit, remaining=remaining)

    def require_authenticated(self, request: HTTPConnection) -> AuthContext:
        context = self.get_context(request)
        if not context.is_authenticated or context.user is None:
            raise AuthenticationRequiredError()
        return context

    def require_permission(self, request: HTTPConnection, permission: str) -> None:
        """
        Raises:
            AuthenticationRequiredError: Anonymous caller
            PermissionDeniedError: Role lacks ``permission``
        """
        self.require_authenticated(request)
        if not self.has_permission(request, permission):
            logger.warning("Permission denied: %s", permission)
            raise PermissionDeniedError(permission)

    def require_feature(self, request: HTTPConnection, feature: str) -> None:
        """
        Raises:
            AuthenticationRequiredError: Anonymous caller
            FeatureUnavailableError: Feature not in the caller's plan
        """
        self.require_authenticated(request)
        if not self.has_feature(request, feature):
            logger.info("Feature not available: %s", feature)
            raise FeatureUnavailableError(feature)

    def require_role(self, request: HTTPConnection, required: Role) -> AuthContext:
        """
        Raises:
            AuthenticationRequiredError: Anonymous caller
            RoleRequiredError: Caller ranks below ``required``
        """
        context = self.require_authenticated(request)
        if not role_satisfies(self.get_user_role(context), required):
            raise RoleRequiredError(required.value)
        return context

    def require_usage(self, request: HTTPConnection, resource: str) -> UsageResult:
        """
        Raises:
            AuthenticationRequiredError: Anonymous caller
            UsageLimitExceededError: Quota used up or count unavailable
        """
        self.require_authenticated(request)
        usage = self.check_usage_limits(request, resource)
        if not usage.allowed:
            raise UsageLimitExceededError(resource, usage.current, usage.limit)
        return usage


permission_service = PermissionService(auth_service, user_directory)
