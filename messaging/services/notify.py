"""
Post-send notification hooks.

The store calls a Notifier after a send has committed. Live push is not
part of the messaging core; deployments plug in whatever transport they
have by providing their own Notifier through the ``get_notifier``
dependency.
"""
from typing import Protocol, Sequence

from messaging.core.logging import get_logger, log_extra
from messaging.models.message import Message

logger = get_logger(__name__)


class Notifier(Protocol):
    def notify(self, message: Message, recipient_ids: Sequence[int]) -> None:
        ...


class NullNotifier:
    def notify(self, message: Message, recipient_ids: Sequence[int]) -> None:
        return None


class LoggingNotifier:
    """Records dispatches in the service log."""

    def notify(self, message: Message, recipient_ids: Sequence[int]) -> None:
        logger.info(
            "Message dispatched",
            **log_extra(message_id=message.id, recipients=len(recipient_ids)),
        )


def get_notifier() -> Notifier:
    """FastAPI dependency providing the notifier."""
    return LoggingNotifier()
