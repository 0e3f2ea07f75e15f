"""
Out-of-band delivery of one-time codes.

The real SMS / email gateway is an external collaborator. LoggingDelivery
is the default: it records that a code was sent without the code itself.
"""

import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class NotificationDelivery(Protocol):

    async def deliver(self, channel: str, target: str, message: str,
                      subject: Optional[str] = None) -> None:
        ...


def mask_target(target: str) -> str:
    """Mask a phone number or email address for logs."""
    if "@" in target:
        local, _, domain = target.partition("@")
        return f"{local[:1]}***@{domain}"
    digits = "".join(c for c in target if c.isdigit())
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"


class LoggingDelivery:
    """Delivery stub for development: logs the masked target only."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    async def deliver(self, channel: str, target: str, message: str,
                      subject: Optional[str] = None) -> None:
        masked = mask_target(target)
        self.sent.append((channel, masked))
        logger.info(f"Verification code sent via {channel} to {masked}", extra={"method": channel})
