"""Provider configuration models.

The backend hands out the provider app id and the login configuration id the
flow needs. Both are required; a flow cannot start without them.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ProviderConfig(BaseModel):
    """Provider app and flow configuration for one Embedded Signup flow.

    Immutable for the lifetime of a flow instance. Accepts both the documented
    wire keys (``providerAppId``/``flowConfigId``) and the short keys the
    config endpoint has historically returned (``appId``/``configId``).
    """

    model_config = ConfigDict(
        frozen=True, populate_by_name=True, coerce_numbers_to_str=True
    )

    provider_app_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("providerAppId", "appId", "provider_app_id"),
    )
    flow_config_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("flowConfigId", "configId", "flow_config_id"),
    )


class ConfigEnvelope(BaseModel):
    """Response envelope of ``GET /embedded-signup/config``."""

    success: bool = False
    data: dict[str, Any] | None = None
    error: Any = None
