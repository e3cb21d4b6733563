import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.core.handlers import BodySizeLimitMiddleware, RequestIdMiddleware, register_exception_handlers, respond
from app.core.logging import setup_logging
from app.database import create_tables
from app.limiter import limiter
from app.routers import appointments, consultations, doctors, health, logs, payments, users

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug,
)
app.state.limiter = limiter


@app.on_event("startup")
def on_startup():
    create_tables()
    logger.info(f"{settings.app_name} {settings.app_version} started ({settings.environment})")


# Last added runs first: request id is bound before the size check logs anything
app.add_middleware(BodySizeLimitMiddleware)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

register_exception_handlers(app)

app.include_router(users.router, prefix="/api/v1")
app.include_router(doctors.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")
app.include_router(consultations.router, prefix="/api/v1")
app.include_router(payments.router, prefix="/api/v1")
app.include_router(logs.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
def root(request: Request):
    return respond(request, {"name": settings.app_name, "docs": "/docs"}, "Welcome")


if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.port, reload=settings.is_development)
