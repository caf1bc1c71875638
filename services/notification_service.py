"""
Decoupled Notification Service for contract parties
Fire-and-forget delivery: a failed notification is logged, never raised
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class NotificationEvent:
    """Event names understood by the delivery layer"""

    PAYMENT_HELD = "payment_held_in_escrow"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_AUTO_RELEASED = "escrow_auto_released"
    APPROVAL_REMINDER = "approval_reminder"
    CONTRACT_OVERDUE = "contract_overdue"
    PAYMENT_REFUNDED = "payment_refunded"
    PAIRING_EXPIRED = "pairing_expired"
    EXTENSION_REQUESTED = "extension_requested"
    EXTENSION_RESOLVED = "extension_resolved"
    REFERRAL_REWARD = "referral_reward_granted"


class NotificationService(ABC):
    """Boundary to whatever delivers messages (email, push, chat)"""

    @abstractmethod
    async def send(self, user_id: Any, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        ...

    async def safe_send(self, user_id: Any, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        try:
            await self.send(user_id, event, payload or {})
            return True
        except Exception as e:
            logger.warning(f"⚠️ NOTIFICATION_FAILED: user={user_id} event={event} error={e}")
            return False


class LoggingNotificationService(NotificationService):
    """Default sink: records notifications in the application log"""

    async def send(self, user_id: Any, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        logger.info(f"NOTIFY: user={user_id} event={event} payload={payload or {}}")
