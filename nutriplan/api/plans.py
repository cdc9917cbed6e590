import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, status
from pydantic import Field

from nutriplan.api.auth import get_current_session
from nutriplan.core.errors import UpstreamError
from nutriplan.core.schemas import CamelModel, MacroBreakdown, Session, UserProfile, WellnessPlan, macro_breakdown
from nutriplan.core.workspace import Workspace, get_workspace

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/plans", tags=["plans"])

PLAN_FAILURE_DETAIL = "Failed to compute protocol. Check biometric inputs."


class MealEditRequest(CamelModel):
    meal: Optional[str] = Field(default=None, min_length=1, max_length=120)
    suggestions: Optional[list[str]] = None
    preparation_steps: Optional[list[str]] = None


class EnrichmentStatus(CamelModel):
    running: bool
    cancelled: bool = False
    in_flight: Optional[str] = None
    processed: list[str]
    failed: list[str]
    pending: int


class ActivePlanResponse(CamelModel):
    plan: WellnessPlan
    macro_breakdown: MacroBreakdown
    progress: int
    enrichment: EnrichmentStatus


def active_plan_response(workspace: Workspace) -> ActivePlanResponse:
    plan = workspace.active_plan
    if plan is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active protocol")
    return ActivePlanResponse(
        plan=plan,
        macro_breakdown=macro_breakdown(plan.macros),
        progress=workspace.tracker.compute_progress(plan),
        enrichment=EnrichmentStatus(**workspace.pipeline.status()),
    )


@router.post("/generate", response_model=ActivePlanResponse)
async def generate_plan(
    profile: UserProfile,
    session: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> ActivePlanResponse:
    try:
        plan = await workspace.gateway.synthesize_plan(profile)
    except UpstreamError as exc:
        logger.warning("plan_synthesis_failed email=%s detail=%s", session.email, str(exc)[:220])
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=PLAN_FAILURE_DETAIL)
    workspace.install_plan(plan)
    logger.info("plan_installed email=%s calories=%s", session.email, plan.daily_calories)
    return active_plan_response(workspace)


@router.get("/active", response_model=ActivePlanResponse)
async def get_active_plan(
    _: Session = Depends(get_current_session), workspace: Workspace = Depends(get_workspace)
) -> ActivePlanResponse:
    # Picks up entries that are still missing an image.
    if workspace.active_plan is not None:
        workspace.pipeline.trigger()
    return active_plan_response(workspace)


@router.patch("/active/meals/{index}", response_model=ActivePlanResponse)
async def edit_meal(
    payload: MealEditRequest,
    index: int = Path(ge=0),
    _: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> ActivePlanResponse:
    try:
        workspace.edit_meal(
            index,
            meal=payload.meal,
            suggestions=payload.suggestions,
            preparation_steps=payload.preparation_steps,
        )
    except LookupError as exc:
        # IndexError is a LookupError too.
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return active_plan_response(workspace)


@router.post("/active/enrichment/cancel", response_model=EnrichmentStatus)
async def cancel_enrichment(
    _: Session = Depends(get_current_session), workspace: Workspace = Depends(get_workspace)
) -> EnrichmentStatus:
    workspace.pipeline.cancel()
    return EnrichmentStatus(**workspace.pipeline.status())
