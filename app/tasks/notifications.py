from __future__ import annotations

import logging
import smtplib

from app.tasks import celery_app
from config import Config
from services.notifications import deliver


_log = logging.getLogger("notify")


@celery_app.task(
    bind=True,
    autoretry_for=(smtplib.SMTPException, OSError),
    retry_backoff=True,
    max_retries=5,
)
def send_notification_task(self, address: str, template_id: str, data: dict):
    """Deliver one templated email; transport errors are retried with backoff."""
    deliver(Config(), address, template_id, data or {})
    _log.info("notification sent task=%s template=%s to=%s", self.request.id, template_id, address)
    return {"template": template_id, "to": address}
