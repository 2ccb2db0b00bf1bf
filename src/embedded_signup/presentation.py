"""User-facing projection of the connection state.

Every state maps to exactly one status, so a host can render the flow from
``project_status`` alone: a spinner with a label, an error banner, a connect
button or a success confirmation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from embedded_signup.models.state import ConnectionState, ErrorKind, FlowError


class StatusKind(Enum):
    NOT_CONFIGURED = "not-configured"
    LOADING_SDK = "loading-sdk"
    READY_TO_CONNECT = "ready-to-connect"
    CONNECTING = "connecting"
    EXCHANGING = "exchanging"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionStatus:
    kind: StatusKind
    title: str
    detail: str = ""
    busy: bool = False
    can_launch: bool = False
    can_retry: bool = False


NOT_CONFIGURED_HINT = (
    "Complete the Meta app setup (business verification, app review and a "
    "login configuration) to enable one-click WhatsApp onboarding."
)


def project_status(state: ConnectionState, error: FlowError | None = None) -> ConnectionStatus:
    """Map a connection state to the status shown to the user."""
    if state is ConnectionState.ERROR:
        if error is not None and not error.retryable:
            detail = error.message
            if error.kind is ErrorKind.CONFIGURATION:
                detail = f"{detail} {NOT_CONFIGURED_HINT}"
            return ConnectionStatus(
                kind=StatusKind.NOT_CONFIGURED,
                title="Embedded Signup Not Ready",
                detail=detail,
            )
        return ConnectionStatus(
            kind=StatusKind.FAILED,
            title="Setup failed",
            detail=error.message if error is not None else "",
            can_retry=True,
        )

    if state in (ConnectionState.IDLE, ConnectionState.SDK_LOADING):
        return ConnectionStatus(
            kind=StatusKind.LOADING_SDK, title="Loading Facebook SDK...", busy=True
        )
    if state is ConnectionState.READY:
        return ConnectionStatus(
            kind=StatusKind.READY_TO_CONNECT,
            title="Connect WhatsApp Business",
            detail="A Facebook popup will guide you through creating or selecting "
            "your business account and verifying your phone number.",
            can_launch=True,
        )
    if state is ConnectionState.CONNECTING:
        return ConnectionStatus(
            kind=StatusKind.CONNECTING,
            title="Setting up WhatsApp...",
            detail="Waiting for Facebook popup to complete...",
            busy=True,
        )
    if state is ConnectionState.EXCHANGING:
        return ConnectionStatus(
            kind=StatusKind.EXCHANGING,
            title="Setting up WhatsApp...",
            detail="Exchanging credentials...",
            busy=True,
        )
    return ConnectionStatus(
        kind=StatusKind.CONNECTED,
        title="WhatsApp Connected",
        detail="Account configured, templates provisioned, and webhooks subscribed.",
    )
