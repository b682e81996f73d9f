"""Notification collaborator interface and default implementation."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from core.models import NotificationUrgency

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers medication notifications (email, push, SMS)."""

    async def send(
        self,
        recipients: List[str],
        medication_context: Dict[str, Any],
        urgency: NotificationUrgency
    ) -> Dict[str, Any]:
        ...


class LoggingNotifier:
    """Records deliveries in the log instead of sending them."""

    async def send(
        self,
        recipients: List[str],
        medication_context: Dict[str, Any],
        urgency: NotificationUrgency
    ) -> Dict[str, Any]:
        logger.info(
            f"Notification ({urgency.value}) to {', '.join(recipients)}: "
            f"{medication_context.get('event')} {medication_context.get('medication_name', '')}"
        )
        return {"delivered": len(recipients), "failed": 0}


async def notify_safely(
    notifier: Optional[Notifier],
    recipients: List[str],
    medication_context: Dict[str, Any],
    urgency: NotificationUrgency,
    timeout_seconds: float = 10.0
) -> Optional[Dict[str, Any]]:
    """
    Send after the atomic core committed; delivery problems never propagate.

    Returns:
        Delivery result, or None when no notifier is configured or sending failed
    """
    if notifier is None or not recipients:
        return None
    try:
        return await asyncio.wait_for(
            notifier.send(recipients, medication_context, urgency),
            timeout=timeout_seconds
        )
    except Exception as e:
        logger.warning(
            f"Notification for {medication_context.get('event')} "
            f"(command {medication_context.get('command_id')}) failed: {e}"
        )
        return None
