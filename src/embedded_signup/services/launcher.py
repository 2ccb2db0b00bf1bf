"""Popup authorization launcher.

Opens the provider-hosted Embedded Signup popup and turns the provider's
login callback into a single ``AuthorizationResult``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from embedded_signup.models.authorization import (
    AuthorizationResult,
    parse_login_response,
)
from embedded_signup.models.config import ProviderConfig
from embedded_signup.models.errors import SdkNotReady
from embedded_signup.services.bootstrap import ProviderSdkBootstrap

logger = logging.getLogger(__name__)

SESSION_INFO_VERSION = "3"
FLOW_VERSION = "v3"

ResultHandler = Callable[[AuthorizationResult], None]


def build_login_options(config: ProviderConfig) -> dict[str, Any]:
    """Login options asking for a code and versioned session info messages."""
    return {
        "config_id": config.flow_config_id,
        "response_type": "code",
        "override_default_response_type": True,
        "extras": {
            "setup": {},
            "featureType": "",
            "sessionInfoVersion": SESSION_INFO_VERSION,
            "version": FLOW_VERSION,
        },
    }


class PopupAuthorizationLauncher:
    """Launches the provider popup once the SDK is ready.

    The caller must have its session capture listener installed before
    calling ``launch``; the popup can post messages as soon as it opens.
    """

    def __init__(self, bootstrap: ProviderSdkBootstrap):
        self.bootstrap = bootstrap

    def launch(self, config: ProviderConfig, on_result: ResultHandler) -> None:
        """Open the popup and report its outcome through ``on_result``.

        ``on_result`` is called exactly once; repeated provider callbacks are
        ignored.

        Args:
            config: Provider configuration for this flow
            on_result: Receives Granted, Denied or Cancelled

        Raises:
            SdkNotReady: If the SDK has not finished initializing
        """
        sdk = self.bootstrap.sdk
        if sdk is None or not self.bootstrap.is_ready(config):
            raise SdkNotReady("Provider SDK not ready. Please wait and try again.")

        delivered = False

        def handle_login(response: Any) -> None:
            nonlocal delivered
            if delivered:
                logger.debug("Ignoring repeated login callback")
                return
            delivered = True

            result = parse_login_response(response)
            logger.info(f"Provider popup finished: {type(result).__name__}")
            on_result(result)

        logger.info(f"Launching provider popup for config {config.flow_config_id}")
        sdk.login(handle_login, build_login_options(config))
