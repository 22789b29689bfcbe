# telemed/jobs/payment_maintenance.py

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from telemed.config import get_settings
from telemed.core.logging import setup_logging
from telemed.database import SessionLocal, is_database_configured
from telemed.exceptions import CRUDError
from telemed.services.appointment_payment_service import AppointmentPaymentService

logger = logging.getLogger(__name__)


class PaymentMaintenanceJob:
    """Sends due payment reminders, then expires unpaid links. Call from cron/scheduler."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, service_factory=AppointmentPaymentService):
        self.session_factory = session_factory
        self.service_factory = service_factory

    async def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        summary = {"sent": 0, "cancelled": 0, "failed": 0, "expired": 0}
        db = self.session_factory()
        try:
            service = self.service_factory(db)
            try:
                summary.update(await service.process_payment_reminders(now))
            except CRUDError as e:
                logger.error(f"Payment reminder pass failed: {e}")
            try:
                summary["expired"] = await service.cleanup_expired_payment_links(now)
            except CRUDError as e:
                logger.error(f"Expired link cleanup failed: {e}")
        finally:
            db.close()

        logger.info(f"Payment maintenance finished: {summary}")
        return summary


# CLI entry point
async def main():
    settings = get_settings()
    setup_logging(json_output=settings.log_json)

    if not is_database_configured():
        logger.error("DATABASE_URL is not configured; nothing to maintain")
        return
    logger.info("Starting payment maintenance...")
    await PaymentMaintenanceJob().run()
    logger.info("Payment maintenance completed")


def run_cli():
    asyncio.run(main())


if __name__ == '__main__':
    run_cli()
