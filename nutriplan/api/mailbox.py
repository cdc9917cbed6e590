from fastapi import APIRouter, Depends, HTTPException, status

from nutriplan.api.auth import get_current_session
from nutriplan.core.schemas import CamelModel, MailboxMessage, Session
from nutriplan.core.workspace import Workspace, get_workspace

router = APIRouter(prefix="/mailbox", tags=["mailbox"])


class MailboxResponse(CamelModel):
    messages: list[MailboxMessage]
    unread_count: int
    has_new_mail: bool


def _response(workspace: Workspace) -> MailboxResponse:
    return MailboxResponse(
        messages=workspace.mailbox,
        unread_count=workspace.unread_count(),
        has_new_mail=workspace.has_new_mail,
    )


@router.get("", response_model=MailboxResponse)
def get_mailbox(
    session: Session = Depends(get_current_session), workspace: Workspace = Depends(get_workspace)
) -> MailboxResponse:
    workspace.load_mailbox(session.email)
    return _response(workspace)


@router.post("/{message_id}/read", response_model=MailboxResponse)
def mark_message_read(
    message_id: str,
    session: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> MailboxResponse:
    workspace.load_mailbox(session.email)
    if not any(message.id == message_id for message in workspace.mailbox):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    workspace.mark_read(session.email, message_id)
    return _response(workspace)
