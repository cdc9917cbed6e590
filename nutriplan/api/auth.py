import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Response, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import EmailStr, Field

from nutriplan.core.errors import DuplicateEmail, EmailNotFound, InvalidCredentials, ValidationError
from nutriplan.core.registry import AuthState
from nutriplan.core.schemas import CamelModel, Session
from nutriplan.core.security import decode_access_token
from nutriplan.core.workspace import Workspace, get_workspace

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


class RegisterRequest(CamelModel):
    name: str = Field(min_length=1, max_length=120)
    email: EmailStr
    password: str = Field(max_length=128)
    confirm_password: str = Field(max_length=128)


class ResetRequest(CamelModel):
    email: EmailStr


class ResetCompleteRequest(CamelModel):
    email: EmailStr
    password: str = Field(max_length=128)
    confirm_password: str = Field(max_length=128)


class TokenResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"
    session: Session


class RegistrationResponse(TokenResponse):
    clinical_id: str


class SessionResponse(CamelModel):
    session: Session
    state: AuthState
    unread_count: int


class NoticeResponse(CamelModel):
    state: AuthState
    notice: Optional[str] = None


def _bad_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


def validation_http_error(exc: ValidationError) -> HTTPException:
    if isinstance(exc, DuplicateEmail):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if isinstance(exc, InvalidCredentials):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(exc, EmailNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)


def get_current_session(
    token: str = Depends(oauth2_scheme), workspace: Workspace = Depends(get_workspace)
) -> Session:
    try:
        subject = decode_access_token(token)
    except Exception:
        raise _bad_credentials()

    session = workspace.auth.current_session()
    # Only the token of the session currently in the slot is honored.
    if not session or session.email != subject or session.access_token != token:
        raise _bad_credentials()
    return session


def _token_response(session: Session) -> TokenResponse:
    return TokenResponse(access_token=session.access_token or "", session=session)


@router.post("/register", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    background_tasks: BackgroundTasks,
    workspace: Workspace = Depends(get_workspace),
) -> RegistrationResponse:
    try:
        result = workspace.register(payload.name, payload.email, payload.password, payload.confirm_password)
    except ValidationError as exc:
        raise validation_http_error(exc)
    background_tasks.add_task(workspace.deliver_welcome_mail, result.session)
    return RegistrationResponse(
        access_token=result.session.access_token or "",
        session=result.session,
        clinical_id=result.clinical_id,
    )


@router.post("/login", response_model=TokenResponse)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(), workspace: Workspace = Depends(get_workspace)
) -> TokenResponse:
    try:
        session = workspace.login(form_data.username, form_data.password)
    except ValidationError as exc:
        raise validation_http_error(exc)
    return _token_response(session)


@router.post("/password-reset/request", response_model=NoticeResponse)
def request_password_reset(payload: ResetRequest, workspace: Workspace = Depends(get_workspace)) -> NoticeResponse:
    try:
        workspace.auth.request_password_reset(payload.email)
    except ValidationError as exc:
        raise validation_http_error(exc)
    return NoticeResponse(state=workspace.auth.state)


@router.post("/password-reset/complete", response_model=NoticeResponse)
def complete_password_reset(
    payload: ResetCompleteRequest, workspace: Workspace = Depends(get_workspace)
) -> NoticeResponse:
    try:
        notice = workspace.auth.complete_password_reset(payload.email, payload.password, payload.confirm_password)
    except ValidationError as exc:
        raise validation_http_error(exc)
    return NoticeResponse(state=workspace.auth.state, notice=notice)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    token: Optional[str] = Depends(optional_oauth2_scheme), workspace: Workspace = Depends(get_workspace)
) -> Response:
    session = workspace.auth.current_session()
    # Only the holder of the current session may clear it; anything else is a no-op.
    if session is not None and token and session.access_token == token:
        workspace.logout()
        logger.info("session_closed email=%s", session.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/session", response_model=SessionResponse)
def get_session(
    session: Session = Depends(get_current_session), workspace: Workspace = Depends(get_workspace)
) -> SessionResponse:
    return SessionResponse(session=session, state=workspace.auth.state, unread_count=workspace.unread_count())
