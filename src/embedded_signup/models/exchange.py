"""Code exchange request and provisioning result models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict

from embedded_signup.models.messages import SessionPayload

GENERIC_EXCHANGE_ERROR = "Setup failed"


@dataclass(frozen=True)
class ExchangeRequest:
    """Body of ``POST /embedded-signup/complete``.

    The session payload is optional; an exchange is never held back waiting
    for it.
    """

    code: str
    entity_id: str
    session_info: SessionPayload | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "entityId": self.entity_id,
            "sessionInfo": self.session_info,
        }


class ProvisionResult(BaseModel):
    """Response envelope of the provisioning endpoint.

    The backend is the source of truth for whether account linkage, template
    setup and webhook subscription succeeded.
    """

    model_config = ConfigDict(extra="allow")

    success: bool = False
    data: Any = None
    error: Any = None

    def error_reason(self) -> str:
        return extract_error_reason(self.error)


def extract_error_reason(error: Any) -> str:
    """Pull a human-readable reason out of a backend ``error`` member.

    The backend sends either a plain string or an object with a ``message``.
    """
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    return GENERIC_EXCHANGE_ERROR
