"""FastAPI application entrypoint."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlmodel import Session

from classmark import db
from classmark.routers.attempts import router as attempts_router
from classmark.routers.coursework import router as coursework_router
from classmark.routers.exams import router as exams_router
from classmark.settings import settings

app = FastAPI(title=settings.app_name, version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(exams_router)
app.include_router(attempts_router)
app.include_router(coursework_router)


@app.on_event("startup")
def on_startup() -> None:
    settings.data_path.mkdir(parents=True, exist_ok=True)
    db.create_db_and_tables()


@app.get("/health", tags=["meta"])
def health() -> dict[str, bool]:
    return {"ok": True, "openai_configured": bool(settings.openai_api_key.strip())}


@app.get("/health/deep", tags=["meta"])
def deep_health() -> dict[str, bool | str]:
    db_ok = False
    try:
        with Session(db.engine) as session:
            session.exec(text("SELECT 1"))
        db_ok = True
    except Exception:
        db_ok = False

    return {
        "ok": True,
        "openai_configured": bool(settings.openai_api_key.strip()),
        "data_dir": str(settings.data_path),
        "db_ok": db_ok,
    }
