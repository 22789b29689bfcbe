# telemed/routers/health.py
from datetime import datetime, timezone

from fastapi import APIRouter

from ..config import get_settings
from ..database import is_database_configured

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
)


@router.get("")
def health_check():
    """Liveness plus which storage mode the process runs in."""
    settings = get_settings()
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
        "storage": "database" if is_database_configured() else "local",
        "email": "sendgrid" if settings.email_enabled else "simulated",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
