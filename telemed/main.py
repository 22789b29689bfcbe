import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from telemed.config import get_settings
from telemed.core.logging import setup_logging
from telemed.database import create_tables
from telemed.routers import auth, appointments, doctors, payments, logs, health

settings = get_settings()
setup_logging(json_output=settings.log_json, level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.on_event("startup")
def on_startup():
    create_tables()
    logger.info(f"{settings.app_name} started ({settings.environment})")


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")
app.include_router(doctors.router, prefix="/api/v1")
app.include_router(payments.router, prefix="/api/v1")
app.include_router(logs.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("telemed.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
