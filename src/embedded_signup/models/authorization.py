"""Authorization result models for the provider popup.

The provider calls back exactly once per launch. Its raw response is parsed
into ``LoginResponse`` and then narrowed to one ``AuthorizationResult``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


@dataclass(frozen=True)
class Granted:
    """User completed the popup and the provider returned an authorization code."""

    code: str


@dataclass(frozen=True)
class Denied:
    """Provider returned an auth response but no authorization code."""

    pass


@dataclass(frozen=True)
class Cancelled:
    """User closed the popup without completing it."""

    pass


AuthorizationResult = Granted | Denied | Cancelled


class AuthResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str | None = None


class LoginResponse(BaseModel):
    """Raw payload handed to the provider's login callback."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    auth_response: AuthResponse | None = Field(default=None, alias="authResponse")
    status: str | None = None

    def to_result(self) -> AuthorizationResult:
        if self.auth_response is None:
            return Cancelled()
        if not self.auth_response.code:
            return Denied()
        return Granted(code=self.auth_response.code)


def parse_login_response(raw: Any) -> AuthorizationResult:
    """Narrow whatever the provider passed to its callback into a result.

    Anything that is not a mapping carries no auth response and counts as
    a cancelled popup.
    """
    if isinstance(raw, LoginResponse):
        return raw.to_result()
    if not isinstance(raw, dict):
        return Cancelled()
    try:
        return LoginResponse.model_validate(raw).to_result()
    except ValidationError:
        # Something came back, but not a usable code
        return Denied() if raw.get("authResponse") else Cancelled()
