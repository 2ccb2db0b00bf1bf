"""Session capture listener.

The provider popup posts session info (the external account identifiers
created during signup) and cancel notifications to the opener window. This
listener picks those out of the shared message channel for exactly one
connection attempt.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Callable

from embedded_signup.host.base import MessageChannel
from embedded_signup.models.messages import (
    SessionPayload,
    WindowMessage,
    parse_signup_message,
)

logger = logging.getLogger(__name__)

PayloadHandler = Callable[[SessionPayload], None]
CancelHandler = Callable[[], None]


class Detach:
    """Handle that removes one installed message handler.

    Calling it more than once is a no-op.
    """

    def __init__(self, channel: MessageChannel, handler: Callable[[WindowMessage], None]):
        self._channel = channel
        self._handler = handler
        self._detached = False

    @property
    def detached(self) -> bool:
        return self._detached

    def __call__(self) -> None:
        if self._detached:
            return
        self._detached = True
        self._channel.remove_listener(self._handler)
        logger.debug("Session capture listener detached")


class SessionCaptureListener:
    """Filters the host message channel for this flow's messages.

    Only messages from an allow-listed origin, with a well-formed body tagged
    with the flow discriminator, reach the callbacks. Everything else is
    dropped silently: the origin check is a security boundary and the channel
    carries plenty of unrelated traffic.
    """

    def __init__(
        self,
        channel: MessageChannel,
        trusted_origins: tuple[str, ...],
        message_type: str,
    ):
        self.channel = channel
        self.trusted_origins = frozenset(trusted_origins)
        self.message_type = message_type

    def attach(
        self,
        on_payload: PayloadHandler,
        on_cancel: CancelHandler | None = None,
    ) -> Detach:
        """Start capturing flow messages.

        Args:
            on_payload: Called with each parsed session payload; the latest wins
            on_cancel: Called when the popup reports a user cancel

        Returns:
            Detach: Idempotent handle that stops capturing
        """
        detach: Detach | None = None

        def handle(message: WindowMessage) -> None:
            # A message already queued when we detached must not act
            if detach is None or detach.detached:
                return
            if message.origin not in self.trusted_origins:
                return

            signup_message = parse_signup_message(message.data, self.message_type)
            if signup_message is None:
                return

            payload = signup_message.session_payload
            if payload is not None:
                logger.debug(f"Session info received: {sorted(payload)}")
                on_payload(payload)

            if signup_message.is_cancel and on_cancel is not None:
                logger.debug("Cancel notification received from provider popup")
                on_cancel()

        detach = Detach(self.channel, handle)
        self.channel.add_listener(handle)
        logger.debug("Session capture listener attached")
        return detach

    @contextmanager
    def capture(
        self,
        on_payload: PayloadHandler,
        on_cancel: CancelHandler | None = None,
    ) -> Iterator[Detach]:
        """Scoped form of ``attach``; the listener is detached on exit."""
        detach = self.attach(on_payload, on_cancel)
        try:
            yield detach
        finally:
            detach()
