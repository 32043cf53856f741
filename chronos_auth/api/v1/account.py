"""Account routes - plan features and usage"""

from fastapi import APIRouter, Depends, Request

from chronos_auth.api.deps import get_current_user
from chronos_auth.schemas.auth import AuthUser
from chronos_auth.services.permissions import permission_service

router = APIRouter()


@router.get("/features")
def get_features(request: Request, user: AuthUser = Depends(get_current_user)):
    """Role, feature flags, usage limits and permissions of the caller"""
    return {"success": True, "data": permission_service.get_feature_summary(request).to_json()}


@router.get("/usage/{resource}")
def get_usage(resource: str, request: Request, user: AuthUser = Depends(get_current_user)):
    """Live usage of one resource kind against the plan limit"""
    usage = permission_service.check_usage_limits(request, resource)
    return {"success": True, "resource": resource, **usage.model_dump(by_alias=True)}
