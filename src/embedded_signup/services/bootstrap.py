"""Provider SDK bootstrap.

Loads and initializes the provider's client library at most once per process.
The SDK handle is process-wide state, reached through ``get_provider_bootstrap``
rather than a module global that every caller pokes at.
"""

from __future__ import annotations

import asyncio
import logging

from embedded_signup.host.base import ProviderRuntime, ProviderSDK
from embedded_signup.models.config import ProviderConfig
from embedded_signup.models.errors import SdkLoadError
from embedded_signup.settings import SignupSettings

logger = logging.getLogger(__name__)


class ProviderSdkBootstrap:
    """Idempotent loader for the provider SDK.

    Concurrent ``ensure_ready`` calls while the script is loading share one
    in-flight future, so the script is injected once. Readiness is monotonic:
    once the SDK has initialized for an app id it stays ready for it.
    A load failure is sticky; there is no retry loop.
    """

    def __init__(self, runtime: ProviderRuntime, settings: SignupSettings):
        self.runtime = runtime
        self.settings = settings
        self._sdk: ProviderSDK | None = None
        self._loading: asyncio.Future[ProviderSDK] | None = None
        self._initialized_app_ids: set[str] = set()

    @property
    def sdk(self) -> ProviderSDK | None:
        """The loaded SDK handle, or None before it has announced itself."""
        return self._sdk

    def is_ready(self, config: ProviderConfig) -> bool:
        return (
            self._sdk is not None
            and config.provider_app_id in self._initialized_app_ids
        )

    async def ensure_ready(self, config: ProviderConfig) -> ProviderSDK:
        """Make sure the SDK is loaded and initialized for this config.

        Args:
            config: Provider configuration with the app id to initialize

        Returns:
            ProviderSDK: Initialized SDK handle

        Raises:
            SdkLoadError: If the SDK script failed to load or to initialize
        """
        if self.is_ready(config):
            return self._sdk

        sdk = await asyncio.shield(self._load())
        self._initialize(sdk, config)
        return sdk

    def _load(self) -> asyncio.Future[ProviderSDK]:
        """Return the shared load future, starting the load on first use."""
        if self._loading is not None:
            return self._loading

        loop = asyncio.get_running_loop()
        self._loading = loop.create_future()

        try:
            self._start_load()
        except Exception as e:
            # Fail the shared future so every waiter sees the same sticky error
            self._on_load_error(e)

        return self._loading

    def _start_load(self) -> None:
        existing = self.runtime.loaded_sdk()
        if existing is not None:
            logger.debug("Provider SDK already present on the page")
            self._on_async_init(existing)
            return

        self.runtime.set_async_init(self._on_async_init)

        if self.runtime.has_script(self.settings.sdk_script_id):
            logger.debug("Provider SDK script already injected, waiting for init")
        else:
            logger.info(f"Injecting provider SDK from {self.settings.sdk_src}")
            self.runtime.inject_script(
                self.settings.sdk_script_id, self.settings.sdk_src, self._on_load_error
            )

    def _on_async_init(self, sdk: ProviderSDK) -> None:
        if self._loading is None or self._loading.done():
            return
        self._sdk = sdk
        self._loading.set_result(sdk)

    def _on_load_error(self, error: Exception) -> None:
        if self._loading is None or self._loading.done():
            return
        logger.warning(f"Provider SDK failed to load: {error}")
        self._loading.set_exception(
            SdkLoadError(f"Failed to load provider SDK: {error}")
        )

    def _initialize(self, sdk: ProviderSDK, config: ProviderConfig) -> None:
        if config.provider_app_id in self._initialized_app_ids:
            return
        try:
            sdk.init(
                app_id=config.provider_app_id,
                cookie=True,
                xfbml=True,
                version=self.settings.sdk_version,
            )
        except Exception as e:
            logger.warning(f"Provider SDK init failed: {e}")
            raise SdkLoadError(f"Failed to initialize provider SDK: {e}") from e
        self._initialized_app_ids.add(config.provider_app_id)
        logger.info(f"Provider SDK initialized for app {config.provider_app_id}")


_bootstrap: ProviderSdkBootstrap | None = None


def get_provider_bootstrap(
    runtime: ProviderRuntime, settings: SignupSettings
) -> ProviderSdkBootstrap:
    """Return the process-wide bootstrap, creating it on first use.

    Later calls return the same instance regardless of arguments; the SDK
    handle is never torn down within a process.
    """
    global _bootstrap
    if _bootstrap is None:
        _bootstrap = ProviderSdkBootstrap(runtime, settings)
    return _bootstrap


def reset_provider_bootstrap() -> None:
    """Forget the process-wide bootstrap. Only meant for test isolation."""
    global _bootstrap
    _bootstrap = None
