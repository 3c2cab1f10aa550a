from fastapi import FastAPI

from aura_coach.api.auth import router as auth_router
from aura_coach.api.chat_history import router as chat_history_router
from aura_coach.api.coach import router as coach_router
from aura_coach.api.usage import router as usage_router
from aura_coach.db.session import create_tables

app = FastAPI(title="Aura Coach")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "Aura Coach API", "status": "ok"}


app.include_router(auth_router)
app.include_router(usage_router)
app.include_router(coach_router)
app.include_router(chat_history_router)
