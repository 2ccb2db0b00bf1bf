"""Host page interfaces consumed by the Embedded Signup flow.

The flow never touches a browser directly. It talks to the page through these
protocols: a cross-origin message channel, the facilities needed to load the
provider SDK, and the loaded SDK handle itself.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol

from embedded_signup.models.messages import WindowMessage

MessageHandler = Callable[[WindowMessage], None]
LoginCallback = Callable[[Any], None]


class MessageChannel(Protocol):
    """The host window's cross-origin message channel.

    Handlers are called on the event loop thread, one message at a time.
    Removing a handler that is not registered is a no-op.
    """

    def add_listener(self, handler: MessageHandler) -> None: ...

    def remove_listener(self, handler: MessageHandler) -> None: ...


class ProviderSDK(Protocol):
    """The provider's client library once loaded."""

    def init(self, *, app_id: str, cookie: bool, xfbml: bool, version: str) -> None:
        """Initialize the SDK for an app id and API version."""
        ...

    def login(self, callback: LoginCallback, options: dict[str, Any]) -> None:
        """Open the provider-hosted authorization popup.

        The callback is invoked once with the provider's login response when
        the popup completes or is closed.
        """
        ...


class ProviderRuntime(Protocol):
    """Page facilities for loading the provider SDK.

    The SDK announces itself by invoking the registered async-init hook after
    it has evaluated; a script that loaded but never called the hook is not
    usable.
    """

    def loaded_sdk(self) -> ProviderSDK | None:
        """Return the SDK handle if the page already has one."""
        ...

    def has_script(self, script_id: str) -> bool:
        """True if a script element with this id is already on the page."""
        ...

    def set_async_init(self, hook: Callable[[ProviderSDK], None]) -> None:
        """Register the hook the SDK calls once it has evaluated."""
        ...

    def inject_script(
        self, script_id: str, src: str, on_error: Callable[[Exception], None]
    ) -> None:
        """Add the SDK script to the page; ``on_error`` fires on load failure."""
        ...
