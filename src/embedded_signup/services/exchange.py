"""Code exchange coordinator.

Hands the authorization code, together with whatever session info the popup
posted, to the backend, which exchanges it with the provider and provisions
the account (linkage, message templates, webhook subscription).
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from embedded_signup.models.errors import ExchangeFailed
from embedded_signup.models.exchange import (
    GENERIC_EXCHANGE_ERROR,
    ExchangeRequest,
    ProvisionResult,
)
from embedded_signup.models.messages import SessionPayload
from embedded_signup.settings import SignupSettings

logger = logging.getLogger(__name__)

COMPLETE_PATH = "/embedded-signup/complete"


class CodeExchangeCoordinator:
    """Sends one provisioning request per granted code.

    A single request and response: no automatic retries. The request timeout
    is the shared HTTP client's.
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

    async def exchange(
        self,
        code: str,
        session_payload: SessionPayload | None,
        entity_id: str,
    ) -> ProvisionResult:
        """Exchange an authorization code for a provisioned connection.

        Args:
            code: Authorization code from the provider popup
            session_payload: Session info posted by the popup, if any arrived
            entity_id: Identifier of the entity being connected

        Returns:
            ProvisionResult: Successful provisioning envelope

        Raises:
            ExchangeFailed: If the request fails or the backend reports failure
        """
        request = ExchangeRequest(
            code=code, entity_id=entity_id, session_info=session_payload
        )
        logger.debug(
            f"Exchanging authorization code for {entity_id} "
            f"(session info: {'yes' if session_payload else 'no'})"
        )

        try:
            response = await self._http_client.post(COMPLETE_PATH, json=request.to_json())
        except httpx.HTTPError as e:
            logger.warning(f"HTTP error during code exchange: {e}")
            raise ExchangeFailed(GENERIC_EXCHANGE_ERROR) from e

        result = self._parse_response(response)

        if not response.is_success or not result.success:
            reason = result.error_reason()
            logger.warning(
                f"Code exchange failed with {response.status_code}: {reason}"
            )
            raise ExchangeFailed(reason)

        logger.info(f"Code exchange succeeded for {entity_id}")
        return result

    def _parse_response(self, response: httpx.Response) -> ProvisionResult:
        """Parse the backend envelope, tolerating bodies that are not JSON."""
        try:
            return ProvisionResult.model_validate(response.json())
        except (ValueError, ValidationError):
            if response.is_success:
                raise ExchangeFailed(GENERIC_EXCHANGE_ERROR)
            return ProvisionResult(success=False)

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
