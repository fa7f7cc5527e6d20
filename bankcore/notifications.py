"""
Notification Module

Customer notifications for withdrawal decisions. Delivery itself belongs to
external services; this module builds the message and hands it to a sender.
Senders report failure by returning False and never raise into the workflow.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum
import uuid
import requests
from abc import ABC, abstractmethod

from .money import format_amount
from .logging_config import get_logger


class NotificationType(Enum):
    """Types of notifications"""
    WITHDRAWAL_APPROVED = "withdrawal_approved"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"


@dataclass
class Notification:
    """Individual notification instance"""
    notification_type: NotificationType
    recipient_account_id: str
    recipient_address: str  # Email of the account owner
    subject: str
    body: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)


class NotificationSender(ABC):
    """Abstract base class for notification senders"""

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification. Returns True if successful."""
        pass


class LogNotificationSender(NotificationSender):
    """Logs notifications instead of delivering them"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("bankcore.notifications")

    def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"{notification.notification_type.value} to {notification.recipient_address}: "
            f"{notification.subject}"
        )
        return True


class WebhookNotificationSender(NotificationSender):
    """Posts notifications to an external delivery service"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout
        self.logger = get_logger("bankcore.notifications")

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient_id": notification.recipient_account_id,
            "recipient_address": notification.recipient_address,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            self.logger.warning(f"Webhook send failed: {e}")
            return False

        if not response.ok:
            self.logger.warning(f"Webhook returned {response.status_code} for {notification.id}")
        return response.ok


def withdrawal_approved_notification(task, account) -> Notification:
    """Message telling the owner a withdrawal was approved"""
    amount = format_amount(task.requested_amount)
    return Notification(
        notification_type=NotificationType.WITHDRAWAL_APPROVED,
        recipient_account_id=account.id,
        recipient_address=account.email,
        subject=f"Withdrawal approved: {amount}",
        body=(
            f"Your withdrawal request for {amount}"
            f"{f' ({task.description})' if task.description else ''} has been approved."
        ),
        metadata={"task_id": task.id, "transaction_id": task.linked_transaction_id}
    )


def withdrawal_rejected_notification(task, account, reason: Optional[str]) -> Notification:
    """Message telling the owner a withdrawal was rejected"""
    amount = format_amount(task.requested_amount)
    body = f"Your withdrawal request for {amount} has been rejected."
    if reason:
        body += f" Reason: {reason}"
    return Notification(
        notification_type=NotificationType.WITHDRAWAL_REJECTED,
        recipient_account_id=account.id,
        recipient_address=account.email,
        subject=f"Withdrawal rejected: {amount}",
        body=body,
        metadata={"task_id": task.id, "rejection_reason": reason}
    )


def create_notifier(config) -> NotificationSender:
    """Webhook sender when a URL is configured, logging otherwise"""
    if config.notification_webhook_url:
        return WebhookNotificationSender(config.notification_webhook_url, config.notification_timeout)
    return LogNotificationSender()
