"""Connection state models.

A single tagged state value replaces the loaded/connecting/progress flags a
UI component would otherwise juggle, so impossible combinations such as
"connecting and complete" cannot be represented.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum

from embedded_signup.models.authorization import AuthorizationResult
from embedded_signup.models.messages import SessionPayload


class ConnectionState(Enum):
    IDLE = "idle"
    SDK_LOADING = "sdk_loading"
    READY = "ready"
    CONNECTING = "connecting"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    ERROR = "error"


class ErrorKind(Enum):
    """Category of a terminal error.

    Configuration and bootstrap errors need a page reload; authorization and
    exchange errors can be retried from the same page.
    """

    CONFIGURATION = "configuration"
    BOOTSTRAP = "bootstrap"
    AUTHORIZATION = "authorization"
    EXCHANGE = "exchange"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.AUTHORIZATION, ErrorKind.EXCHANGE)


@dataclass(frozen=True)
class FlowError:
    """Terminal failure of the flow, with the message shown to the user."""

    kind: ErrorKind
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


@dataclass(frozen=True)
class Transition:
    """One recorded state change, kept for tracing and invariant checks."""

    source: ConnectionState
    event: str
    target: ConnectionState
    listener_attached: bool


@dataclass
class ConnectionAttempt:
    """One user-initiated connection attempt.

    Created on launch and discarded when the attempt ends, so nothing captured
    during an aborted attempt can leak into the next one.
    """

    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    session_payload: SessionPayload | None = None
    result: AuthorizationResult | None = None
