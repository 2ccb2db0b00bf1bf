import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from embedded_signup.presentation import ConnectionStatus

logger = logging.getLogger(__name__)

SuccessCallback = Callable[[Any], Awaitable[None] | None]
ErrorCallback = Callable[[str], Awaitable[None] | None]
StateChangeCallback = Callable[[ConnectionStatus], Awaitable[None] | None]
NoticeCallback = Callable[[str, str], Awaitable[None] | None]


class SignupCallbacks:
    """Host callbacks for an Embedded Signup connection.

    The host only ever needs the terminal outcomes; state changes and notices
    are there for hosts that render progress or toasts themselves. Callbacks
    may be plain functions or coroutine functions. A failing callback is
    logged and never disturbs the connection.
    """

    def __init__(self):
        self._success: SuccessCallback | None = None
        self._error: ErrorCallback | None = None
        self._state_change: StateChangeCallback | None = None
        self._notice: NoticeCallback | None = None
        self._pending: set[asyncio.Task[Any]] = set()

    def on_success(self, callback: SuccessCallback) -> None:
        """Register your callback for a completed connection.

        Args:
            callback: Called once with the ``data`` member of the backend's
                provisioning result.
        """
        self._success = callback

    def on_error(self, callback: ErrorCallback) -> None:
        """Register your callback for a terminal failure.

        Args:
            callback: Called with the user-facing error message.
        """
        self._error = callback

    def on_state_change(self, callback: StateChangeCallback) -> None:
        """Register your callback for every status change."""
        self._state_change = callback

    def on_notice(self, callback: NoticeCallback) -> None:
        """Register your callback for transient notices.

        Args:
            callback: Called with ``(level, message)``; level is ``"success"``
                or ``"error"``.
        """
        self._notice = callback

    def call_success(self, data: Any) -> None:
        self._invoke("success", self._success, data)

    def call_error(self, message: str) -> None:
        self._invoke("error", self._error, message)

    def call_state_change(self, status: ConnectionStatus) -> None:
        self._invoke("state change", self._state_change, status)

    def call_notice(self, level: str, message: str) -> None:
        self._invoke("notice", self._notice, level, message)

    async def drain(self) -> None:
        """Wait for coroutine callbacks that are still running."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _invoke(self, name: str, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception as e:
            logger.warning(f"{name.capitalize()} callback failed: {e}")
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Callback failed: {error}")
