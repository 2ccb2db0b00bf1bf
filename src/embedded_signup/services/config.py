"""Provider configuration client.

Fetches the provider app id and login configuration id from the backend.
Any failure here means Embedded Signup is not configured on this server.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from embedded_signup.models.config import ConfigEnvelope, ProviderConfig
from embedded_signup.models.errors import ConfigurationError
from embedded_signup.settings import SignupSettings

logger = logging.getLogger(__name__)

CONFIG_PATH = "/embedded-signup/config"


class ProviderConfigClient:
    """Reads ``GET /embedded-signup/config``.

    No retries: a missing or incomplete configuration is surfaced once and
    stays that way until the page is reloaded.
    """

    def __init__(
        self,
        settings: SignupSettings,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self._http_client = http_client or httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.timeout,
            headers={"Content-Type": "application/json"},
        )

    async def fetch(self) -> ProviderConfig:
        """Fetch and validate the provider configuration.

        Returns:
            ProviderConfig: Complete provider configuration

        Raises:
            ConfigurationError: If the endpoint fails or returns incomplete data
        """
        logger.debug(f"Fetching provider config from {CONFIG_PATH}")

        try:
            response = await self._http_client.get(CONFIG_PATH)
        except httpx.HTTPError as e:
            raise ConfigurationError(f"HTTP error fetching provider config: {e}") from e

        if not response.is_success:
            raise ConfigurationError(
                f"Provider config endpoint returned {response.status_code}"
            )

        try:
            envelope = ConfigEnvelope.model_validate(response.json())
            if not envelope.success or envelope.data is None:
                raise ConfigurationError("Provider config response was not successful")
            config = ProviderConfig.model_validate(envelope.data)
        except (ValueError, ValidationError) as e:
            raise ConfigurationError(f"Invalid provider config: {e}") from e

        logger.info(f"Loaded provider config for app {config.provider_app_id}")
        return config

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
