import logging

from fastapi import FastAPI

from nutriplan.api.archive import router as archive_router
from nutriplan.api.auth import router as auth_router
from nutriplan.api.chat import router as chat_router
from nutriplan.api.mailbox import router as mailbox_router
from nutriplan.api.plans import router as plans_router
from nutriplan.api.tracker import router as tracker_router
from nutriplan.core.workspace import get_workspace
from nutriplan.db.session import create_tables

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="NutriPlan AI")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()
    session = get_workspace().restore()
    if session is not None:
        logger.info("session_restored email=%s", session.email)


@app.on_event("shutdown")
def on_shutdown() -> None:
    get_workspace().shutdown()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "NutriPlan AI API", "status": "ok"}


app.include_router(auth_router)
app.include_router(plans_router)
app.include_router(archive_router)
app.include_router(mailbox_router)
app.include_router(tracker_router)
app.include_router(chat_router)
