import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from labkeeper.config import settings
from labkeeper.errors import InternalError
from labkeeper.jobs.scheduler import start_scheduler, stop_scheduler
from labkeeper.routers import (
    component_requests,
    damaged_assets,
    faculty,
    health,
    lab_inventory,
    lab_transactions,
    student,
)

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL, "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(student.router)
app.include_router(faculty.router)
app.include_router(lab_inventory.router)
app.include_router(lab_transactions.router)
app.include_router(component_requests.router)
app.include_router(damaged_assets.router)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    error = InternalError("Storage failure.")
    return JSONResponse(
        status_code=error.status_code,
        content={"detail": {"code": error.code, "message": "Something went wrong. Please try again."}},
    )


@app.on_event("startup")
def on_startup():
    if settings.SCHEDULER_ENABLED:
        start_scheduler()


@app.on_event("shutdown")
def on_shutdown():
    stop_scheduler()


@app.get("/")
def root():
    return {"status": "ok"}
