import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import Field

from nutriplan.api.auth import get_current_session
from nutriplan.core.schemas import CamelModel, DailyTaskSheet, LoggedFood, Session
from nutriplan.core.workspace import Workspace, get_workspace

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/tracker", tags=["tracker"])


class FoodLogRequest(CamelModel):
    name: str = Field(default="", max_length=200)


class TrackerResponse(CamelModel):
    sheet: DailyTaskSheet
    progress: int
    logged: Optional[LoggedFood] = None


def _response(workspace: Workspace, logged: Optional[LoggedFood] = None) -> TrackerResponse:
    sheet = workspace.tracker.current_sheet()
    return TrackerResponse(
        sheet=sheet,
        progress=workspace.tracker.compute_progress(workspace.active_plan),
        logged=logged,
    )


@router.get("/today", response_model=TrackerResponse)
def get_today(
    _: Session = Depends(get_current_session), workspace: Workspace = Depends(get_workspace)
) -> TrackerResponse:
    workspace.tracker.load_for_today()
    return _response(workspace)


@router.post("/tasks/{task_key}/toggle", response_model=TrackerResponse)
def toggle_task(
    task_key: str,
    _: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> TrackerResponse:
    workspace.tracker.toggle_task(task_key)
    return _response(workspace)


@router.post("/foods", response_model=TrackerResponse)
def log_food(
    payload: FoodLogRequest,
    session: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> TrackerResponse:
    logged = workspace.tracker.log_food(payload.name)
    if logged is not None:
        logger.info("food_logged email=%s food_id=%s", session.email, logged.id)
    return _response(workspace, logged=logged)


@router.delete("/foods/{food_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_food(
    food_id: str,
    _: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> Response:
    workspace.tracker.remove_food(food_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/nutrition/refresh", response_model=TrackerResponse)
async def refresh_nutrition(
    _: Session = Depends(get_current_session), workspace: Workspace = Depends(get_workspace)
) -> TrackerResponse:
    await workspace.tracker.refresh_nutrition_estimate(workspace.gateway)
    return _response(workspace)
