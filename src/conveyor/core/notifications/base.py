"""Notifier interface for user-facing alerts."""

from abc import ABC, abstractmethod

# Channel names understood by notifiers: "admin" is actionable, "info" is FYI
ADMIN_CHANNEL = "admin"
INFO_CHANNEL = "info"


class Notifier(ABC):
    """Sends a text message to a named channel."""

    @abstractmethod
    def send_message(self, channel: str, text: str) -> bool:
        """Send ``text`` to ``channel``.

        Returns:
            True when the message was delivered (or the channel is disabled),
            False on failure. Implementations never raise.
        """
