"""In-process message channel.

Lets the flow run outside a browser, e.g. inside a desktop shell that relays
popup messages or in automated tests.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from embedded_signup.host.base import MessageHandler
from embedded_signup.models.messages import WindowMessage

logger = logging.getLogger(__name__)


class LocalMessageChannel:
    """Message channel that dispatches to registered handlers in-process.

    ``post`` queues delivery on the running event loop like a browser queues
    a message event; ``dispatch`` delivers immediately. Handlers are resolved
    at delivery time, so a handler removed before a queued message is
    delivered never sees it.
    """

    def __init__(self):
        self._handlers: list[MessageHandler] = []

    @property
    def listener_count(self) -> int:
        return len(self._handlers)

    def add_listener(self, handler: MessageHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_listener(self, handler: MessageHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def post(self, origin: str, data: Any) -> None:
        """Queue a message for delivery on the next loop iteration."""
        asyncio.get_running_loop().call_soon(
            self.dispatch, WindowMessage(origin=origin, data=data)
        )

    def dispatch(self, message: WindowMessage) -> None:
        """Deliver a message to every currently registered handler."""
        for handler in list(self._handlers):
            if handler not in self._handlers:
                continue
            try:
                handler(message)
            except Exception as e:
                logger.warning(f"Message handler failed: {e}")
