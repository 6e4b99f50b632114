import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from practicum.config import settings
from practicum.db.database import init_db, close_db
from practicum.errors import PracticumError
from practicum.middleware.auth import AuthMiddleware

logger = logging.getLogger(__name__)

# CORS: use CORS_ORIGINS (comma-separated) or local defaults.
if settings.cors_origins:
    _allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
else:
    _allowed_origins = [
        "http://localhost:8000",
        "http://127.0.0.1:8000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await close_db()


app = FastAPI(title="Practicum Session Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)
app.add_middleware(AuthMiddleware)


@app.exception_handler(PracticumError)
async def practicum_error_handler(request: Request, exc: PracticumError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.category}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Import and register routes
from practicum.routes.sessions import router as sessions_router
from practicum.routes.feedback import router as feedback_router
from practicum.routes.attempts import router as attempts_router
from practicum.routes.stages import router as stages_router

app.include_router(sessions_router)
app.include_router(feedback_router)
app.include_router(attempts_router)
app.include_router(stages_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
