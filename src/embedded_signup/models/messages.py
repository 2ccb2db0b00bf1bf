"""Cross-origin message models.

The provider popup talks to the opener through the window message channel.
Most traffic on that channel belongs to someone else, so parsing here never
raises: anything that is not a well-formed flow message parses to ``None``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

SessionPayload = dict[str, Any]

CANCEL_EVENT = "CANCEL"


@dataclass(frozen=True)
class WindowMessage:
    """A message delivered on the host window's message channel.

    Mirrors what a browser ``message`` event exposes to a listener: the sender
    origin and the posted data, which may be a serialized string or an
    already structured value.
    """

    origin: str
    data: Any


class SignupMessage(BaseModel):
    """A flow message sent by the provider popup.

    ``data`` carries session info (external account identifiers such as
    ``waba_id`` and ``phone_number_id``); ``event`` flags lifecycle events
    such as a user cancel.
    """

    model_config = ConfigDict(extra="allow")

    type: str
    event: str | None = None
    data: SessionPayload | None = None

    @property
    def is_cancel(self) -> bool:
        return self.event == CANCEL_EVENT

    @property
    def session_payload(self) -> SessionPayload | None:
        return dict(self.data) if self.data else None


def parse_signup_message(data: Any, message_type: str) -> SignupMessage | None:
    """Parse a posted message body into a flow message.

    Args:
        data: Raw posted data, a JSON string or a mapping
        message_type: Discriminator identifying this flow's messages

    Returns:
        SignupMessage if the body is well formed and tagged for this flow,
        None otherwise
    """
    if isinstance(data, (str, bytes, bytearray)):
        try:
            data = json.loads(data)
        except ValueError:
            return None

    if not isinstance(data, dict) or data.get("type") != message_type:
        return None

    try:
        return SignupMessage.model_validate(data)
    except ValidationError:
        return None
