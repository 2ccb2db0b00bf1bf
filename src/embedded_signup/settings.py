"""Settings for the Embedded Signup flow.

Defaults match the provider's documented SDK location and origins. Deployments
override them through environment variables, optionally from a ``.env`` file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_TRUSTED_ORIGINS = ("https://www.facebook.com", "https://web.facebook.com")


@dataclass(frozen=True)
class SignupSettings:
    """Immutable flow settings.

    Attributes:
        api_base_url: Root of the admin REST API, including the ``/api`` prefix
        timeout: HTTP request timeout in seconds, shared by every backend call
        sdk_src: URL of the provider SDK script
        sdk_script_id: DOM id used to detect an already injected SDK script
        sdk_version: Graph API version passed to the SDK's init call
        trusted_origins: Origins allowed to post flow messages
        message_type: Discriminator of this flow's posted messages
    """

    api_base_url: str = "/api"
    timeout: float = 30.0
    sdk_src: str = "https://connect.facebook.net/en_US/sdk.js"
    sdk_script_id: str = "facebook-jssdk"
    sdk_version: str = "v21.0"
    trusted_origins: tuple[str, ...] = field(default=DEFAULT_TRUSTED_ORIGINS)
    message_type: str = "WA_EMBEDDED_SIGNUP"

    @classmethod
    def from_env(cls, env_file: str | None = None) -> SignupSettings:
        """Build settings from ``EMBEDDED_SIGNUP_*`` environment variables.

        ``EMBEDDED_SIGNUP_API_URL`` is the API host; ``/api`` is appended the
        same way the admin front-end's shared client does.
        """
        load_dotenv(env_file)

        defaults = cls()
        api_root = os.getenv("EMBEDDED_SIGNUP_API_URL", "").rstrip("/")
        if not api_root:
            logger.warning(
                "EMBEDDED_SIGNUP_API_URL is not set; the relative API base "
                f"'{defaults.api_base_url}' only works with an HTTP client "
                "that resolves it against a host"
            )
        origins = os.getenv("EMBEDDED_SIGNUP_TRUSTED_ORIGINS")

        return cls(
            api_base_url=f"{api_root}/api",
            timeout=float(os.getenv("EMBEDDED_SIGNUP_TIMEOUT", defaults.timeout)),
            sdk_src=os.getenv("EMBEDDED_SIGNUP_SDK_SRC", defaults.sdk_src),
            sdk_version=os.getenv("EMBEDDED_SIGNUP_SDK_VERSION", defaults.sdk_version),
            trusted_origins=(
                tuple(o.strip() for o in origins.split(",") if o.strip())
                if origins
                else defaults.trusted_origins
            ),
        )
