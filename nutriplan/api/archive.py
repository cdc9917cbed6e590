from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import Field

from nutriplan.api.auth import get_current_session
from nutriplan.api.plans import ActivePlanResponse, active_plan_response
from nutriplan.core.schemas import CamelModel, SavedPlanRecord, Session
from nutriplan.core.workspace import Workspace, get_workspace

router = APIRouter(prefix="/archive", tags=["archive"])


class SavePlanRequest(CamelModel):
    label: Optional[str] = Field(default=None, max_length=120)


class ArchiveListResponse(CamelModel):
    items: list[SavedPlanRecord]


@router.get("", response_model=ArchiveListResponse)
def list_saved_plans(
    _: Session = Depends(get_current_session), workspace: Workspace = Depends(get_workspace)
) -> ArchiveListResponse:
    return ArchiveListResponse(items=workspace.saved_plans)


@router.post("", response_model=SavedPlanRecord, status_code=status.HTTP_201_CREATED)
def save_active_plan(
    payload: Optional[SavePlanRequest] = None,
    _: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> SavedPlanRecord:
    label = payload.label if payload else None
    try:
        return workspace.save_active_plan(label=label.strip() if label and label.strip() else None)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_saved_plan(
    record_id: str,
    _: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> Response:
    if not workspace.archive.delete(record_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Saved protocol not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{record_id}/recall", response_model=ActivePlanResponse)
async def recall_saved_plan(
    record_id: str,
    _: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> ActivePlanResponse:
    try:
        workspace.recall(record_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return active_plan_response(workspace)
