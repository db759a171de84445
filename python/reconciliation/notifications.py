"""
Notification dispatch boundary

The engine only decides whether a notification is warranted and of which
kind. Delivery belongs to an external service behind NotificationDispatcher.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from log_utils import mask_card, mask_email, sanitize_for_logging
from .records import CardUpdateRecord, utc_now

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """A message handed to the delivery service"""
    notification_type: str
    recipient: str  # customer email, or "operations"
    vault_id: str
    update_id: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: utc_now().isoformat())


class NotificationError(Exception):
    """Raised by a dispatcher when delivery could not be queued"""
    pass


class NotificationDispatcher:
    """Interface to the notification delivery service"""

    async def send(self, notification: Notification) -> None:
        raise NotImplementedError


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Records notifications in memory and in the log instead of delivering them"""

    def __init__(self):
        self.sent: List[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        recipient = notification.recipient
        if '@' in recipient:
            recipient = mask_email(recipient)
        logger.info(
            "Notification %s queued for %s (vault %s)",
            notification.notification_type,
            recipient,
            sanitize_for_logging(notification.vault_id),
        )


def build_customer_notification(
    record: CardUpdateRecord,
    notification_type: str
) -> Notification:
    return Notification(
        notification_type=notification_type,
        recipient=record.customer_info.email,
        vault_id=record.vault_id,
        update_id=record.update_id,
        context={
            'customer_name': record.customer_info.name,
            'card': mask_card(record.updated_card.last_four),
            'card_type': record.updated_card.card_type,
            'exp_month': record.updated_card.exp_month,
            'exp_year': record.updated_card.exp_year,
        }
    )


def build_ops_notification(
    record: CardUpdateRecord,
    notification_type: str,
    error: Optional[str]
) -> Notification:
    return Notification(
        notification_type=notification_type,
        recipient="operations",
        vault_id=record.vault_id,
        update_id=record.update_id,
        context={'error': sanitize_for_logging(error or "")},
    )


def build_high_risk_alert(export_id: str, vault_id: str, risk_score: int) -> Notification:
    return Notification(
        notification_type="vault_high_risk_detected",
        recipient="operations",
        vault_id=vault_id,
        context={'export_id': export_id, 'risk_score': risk_score},
    )

