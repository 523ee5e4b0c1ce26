import logging

from fastapi import FastAPI

from fitcoach.api.auth import router as auth_router
from fitcoach.api.coach import router as coach_router
from fitcoach.api.conversations import router as conversations_router
from fitcoach.api.logs import router as logs_router
from fitcoach.api.plans import router as plans_router
from fitcoach.db.session import create_tables
from fitcoach.services.llm import completion_configured

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="FitCoach")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()
    if not completion_configured():
        logger.warning("completion_api_key_missing coach and plan generation will return 503")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "FitCoach API", "status": "ok"}


app.include_router(auth_router)
app.include_router(logs_router)
app.include_router(plans_router)
app.include_router(coach_router)
app.include_router(conversations_router)
