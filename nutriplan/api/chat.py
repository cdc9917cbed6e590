import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import Field

from nutriplan.api.auth import get_current_session
from nutriplan.core.errors import UpstreamError
from nutriplan.core.schemas import CamelModel, ChatMessage, Session
from nutriplan.core.workspace import Workspace, get_workspace
from nutriplan.services.gateway import accumulate_reply

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/chat", tags=["chat"])


class ChatRequest(CamelModel):
    message: str = Field(min_length=1, max_length=4000)
    history: list[ChatMessage] = Field(default_factory=list)


class ChatReplyResponse(CamelModel):
    reply: str


async def _fragments(workspace: Workspace, payload: ChatRequest) -> AsyncIterator[str]:
    try:
        async for fragment in workspace.gateway.stream_chat_reply(payload.history, payload.message):
            if fragment:
                yield fragment
    except UpstreamError as exc:
        logger.warning("chat_stream_failed detail=%s", str(exc)[:220])


@router.post("/stream")
def stream_chat(
    payload: ChatRequest,
    _: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> StreamingResponse:
    return StreamingResponse(_fragments(workspace, payload), media_type="text/plain; charset=utf-8")


@router.post("", response_model=ChatReplyResponse)
async def chat_reply(
    payload: ChatRequest,
    _: Session = Depends(get_current_session),
    workspace: Workspace = Depends(get_workspace),
) -> ChatReplyResponse:
    reply = await accumulate_reply(workspace.gateway.stream_chat_reply(payload.history, payload.message))
    return ChatReplyResponse(reply=reply)
