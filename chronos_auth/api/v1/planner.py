"""Planner routes guarded by plan features and usage limits"""

import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from chronos_auth.api.middleware import with_feature, with_usage_limit
from chronos_auth.core.database import SessionLocal
from chronos_auth.core.exceptions import ValidationError
from chronos_auth.models import Goal
from chronos_auth.services.permissions import permission_service
from chronos_auth.services.user_directory import RESOURCE_MODELS, user_directory

logger = logging.getLogger(__name__)

router = APIRouter()


class GoalCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)


def _usage_overview(user_id: str) -> dict:
    return {kind: user_directory.count_resources(user_id, kind) for kind in RESOURCE_MODELS}


def _create_goal(user_id: str, title: str) -> dict:
    db = SessionLocal()
    try:
        goal = Goal(user_id=user_id, title=title)
        db.add(goal)
        db.commit()
        db.refresh(goal)
        return goal.to_dict()
    finally:
        db.close()


@router.get("/analytics/premium")
@with_feature("premium-analytics")
async def premium_analytics(request: Request):
    """Resource totals for the caller (premium plans)"""
    user = permission_service.get_context(request).user
    overview = await run_in_threadpool(_usage_overview, user.id)
    return {"success": True, "data": {"userId": user.id, "resources": overview}}


@router.post("/goals", status_code=status.HTTP_201_CREATED)
@with_usage_limit("goals")
async def create_goal(request: Request):
    """Create a goal unless the plan's goal quota is used up"""
    try:
        body = GoalCreate.model_validate(await request.json())
    except (ValueError, PydanticValidationError) as exc:
        raise ValidationError("Goal title is required") from exc

    user = permission_service.get_context(request).user
    goal = await run_in_threadpool(_create_goal, user.id, body.title)
    logger.info("Goal created user_id=%s goal_id=%s", user.id, goal["id"])
    return JSONResponse(status_code=status.HTTP_201_CREATED, content={"success": True, "data": goal})
