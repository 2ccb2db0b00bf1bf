"""Embedded Signup connection state machine.

Drives one channel connection from configuration through provisioning:

    Idle -> SdkLoading -> Ready -> Connecting -> Exchanging -> Complete
                                              \\-> Error (retry -> Idle)

Two independent producers feed the machine while it is Connecting: the
provider popup's login callback and the session capture listener. They are
only correlated at the moment a granted code moves the machine to Exchanging;
the exchange never waits for session info that may never arrive.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial

import httpx

from embedded_signup.callbacks import SignupCallbacks
from embedded_signup.host.base import MessageChannel, ProviderRuntime
from embedded_signup.models.authorization import (
    AuthorizationResult,
    Cancelled,
    Denied,
    Granted,
)
from embedded_signup.models.config import ProviderConfig
from embedded_signup.models.errors import (
    ConfigurationError,
    ExchangeFailed,
    ProviderUnavailable,
)
from embedded_signup.models.exchange import GENERIC_EXCHANGE_ERROR
from embedded_signup.models.messages import SessionPayload
from embedded_signup.models.state import (
    ConnectionAttempt,
    ConnectionState,
    ErrorKind,
    FlowError,
    Transition,
)
from embedded_signup.presentation import ConnectionStatus, project_status
from embedded_signup.services.bootstrap import (
    ProviderSdkBootstrap,
    get_provider_bootstrap,
)
from embedded_signup.services.config import ProviderConfigClient
from embedded_signup.services.exchange import CodeExchangeCoordinator
from embedded_signup.services.launcher import PopupAuthorizationLauncher
from embedded_signup.services.listener import Detach, SessionCaptureListener
from embedded_signup.settings import SignupSettings

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "Embedded Signup is not configured on this server."
SDK_LOAD_FAILED_MESSAGE = "Failed to load Facebook SDK"
SDK_NOT_READY_NOTICE = "Facebook SDK not ready. Please wait and try again."
NO_CODE_MESSAGE = "No authorization code received"
CONNECTED_NOTICE = "WhatsApp Business Account connected!"
EXCHANGE_INTERRUPTED_MESSAGE = "Setup was interrupted before it finished"

S = ConnectionState

ALLOWED_TRANSITIONS = frozenset(
    {
        (S.IDLE, S.SDK_LOADING),
        (S.IDLE, S.ERROR),
        (S.IDLE, S.READY),  # SDK already ready from an earlier attempt
        (S.SDK_LOADING, S.READY),
        (S.SDK_LOADING, S.ERROR),
        (S.READY, S.CONNECTING),
        (S.CONNECTING, S.IDLE),
        (S.CONNECTING, S.EXCHANGING),
        (S.CONNECTING, S.ERROR),
        (S.EXCHANGING, S.COMPLETE),
        (S.EXCHANGING, S.ERROR),
        (S.ERROR, S.IDLE),
    }
)


class EmbeddedSignupConnection:
    """Connects one entity (e.g. a merchant) to the provider's channel.

    Owns the single connection state value, the current attempt and the
    attempt's session capture listener. Every failure is handled here and
    turned into a state; the host only hears about a completed connection
    or a terminal error through ``callbacks``.
    """

    def __init__(
        self,
        entity_id: str,
        config_client: ProviderConfigClient,
        bootstrap: ProviderSdkBootstrap,
        channel: MessageChannel,
        exchanger: CodeExchangeCoordinator,
        settings: SignupSettings | None = None,
        callbacks: SignupCallbacks | None = None,
    ):
        self.entity_id = entity_id
        self.settings = settings or SignupSettings()
        self.config_client = config_client
        self.bootstrap = bootstrap
        self.exchanger = exchanger
        self.callbacks = callbacks or SignupCallbacks()
        self.listener = SessionCaptureListener(
            channel, self.settings.trusted_origins, self.settings.message_type
        )
        self.launcher = PopupAuthorizationLauncher(bootstrap)
        self.history: list[Transition] = []

        self._state = ConnectionState.IDLE
        self._started = False
        self._error: FlowError | None = None
        self._config: ProviderConfig | None = None
        self._attempt: ConnectionAttempt | None = None
        self._detach: Detach | None = None
        self._exchange_task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._http_client: httpx.AsyncClient | None = None

    @classmethod
    def create(
        cls,
        entity_id: str,
        runtime: ProviderRuntime,
        channel: MessageChannel,
        settings: SignupSettings | None = None,
        callbacks: SignupCallbacks | None = None,
    ) -> EmbeddedSignupConnection:
        """Build a connection wired to the process-wide SDK bootstrap.

        Both backend calls share one HTTP client, closed by ``close()``.
        """
        settings = settings or SignupSettings()
        http_client = httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.timeout,
            headers={"Content-Type": "application/json"},
        )
        connection = cls(
            entity_id,
            config_client=ProviderConfigClient(settings, http_client),
            bootstrap=get_provider_bootstrap(runtime, settings),
            channel=channel,
            exchanger=CodeExchangeCoordinator(settings, http_client),
            settings=settings,
            callbacks=callbacks,
        )
        connection._http_client = http_client
        return connection

    # ================================
    # Observable state
    # ================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def error(self) -> FlowError | None:
        return self._error

    @property
    def config(self) -> ProviderConfig | None:
        return self._config

    @property
    def attempt(self) -> ConnectionAttempt | None:
        return self._attempt

    @property
    def status(self) -> ConnectionStatus:
        return project_status(self._state, self._error)

    @property
    def listener_attached(self) -> bool:
        return self._detach is not None and not self._detach.detached

    # ================================
    # Host actions
    # ================================

    async def start(self) -> None:
        """Fetch the provider config and bring the SDK up.

        Ends in Ready, or in a non-retryable Error when the provider is not
        configured or its SDK cannot be loaded. Calling it again once started,
        including while the first call is still fetching, is a no-op.
        """
        if self._started:
            logger.debug(f"start() ignored in state {self._state.value}")
            return

        self._started = True
        self._loop = asyncio.get_running_loop()

        try:
            config = await self.config_client.fetch()
        except ConfigurationError as e:
            logger.warning(f"Provider config unavailable: {e}")
            self._fail(ErrorKind.CONFIGURATION, NOT_CONFIGURED_MESSAGE, "config failed")
            return
        except Exception:
            logger.exception("Unexpected error fetching provider config")
            self._fail(ErrorKind.CONFIGURATION, NOT_CONFIGURED_MESSAGE, "config failed")
            return

        self._config = config
        self._transition(ConnectionState.SDK_LOADING, "config fetched")

        try:
            await self.bootstrap.ensure_ready(config)
        except ProviderUnavailable as e:
            logger.warning(f"Provider SDK unavailable: {e}")
            self._fail(ErrorKind.BOOTSTRAP, SDK_LOAD_FAILED_MESSAGE, "sdk load failed")
            return
        except Exception:
            logger.exception("Unexpected error loading provider SDK")
            self._fail(ErrorKind.BOOTSTRAP, SDK_LOAD_FAILED_MESSAGE, "sdk load failed")
            return

        self._transition(ConnectionState.READY, "sdk initialized")

    def launch(self) -> bool:
        """Open the provider popup for a fresh attempt.

        The session capture listener is installed before the popup opens, so
        the popup's first message cannot be missed.

        Returns:
            True if the popup was launched, False if the flow is not ready
        """
        config = self._config
        if (
            self._state is not ConnectionState.READY
            or config is None
            or not self.bootstrap.is_ready(config)
        ):
            logger.info(f"Launch rejected in state {self._state.value}")
            self.callbacks.call_notice("error", SDK_NOT_READY_NOTICE)
            return False

        attempt = ConnectionAttempt()
        self._attempt = attempt
        self._detach = self.listener.attach(
            on_payload=partial(self._on_session_payload, attempt.attempt_id),
            on_cancel=partial(self._on_cancel_message, attempt.attempt_id),
        )
        self._transition(ConnectionState.CONNECTING, "launch")

        try:
            self.launcher.launch(
                config, partial(self._on_authorization_result, attempt.attempt_id)
            )
        except Exception as e:
            logger.exception("Provider popup could not be opened")
            if self._is_current(attempt.attempt_id) and (
                self._state is ConnectionState.CONNECTING
            ):
                message = f"Could not open popup: {e}"
                self._leave_connecting(
                    ConnectionState.ERROR,
                    "launch failed",
                    FlowError(ErrorKind.AUTHORIZATION, message),
                )
                self.callbacks.call_notice("error", message)
                self.callbacks.call_error(message)
            return False

        return True

    def retry(self) -> bool:
        """Leave a retryable Error and re-enable launching.

        Returns:
            True if the machine left Error, False if the error needs a reload
            or there is nothing to retry
        """
        if self._state is not ConnectionState.ERROR:
            return False
        if self._error is not None and not self._error.retryable:
            logger.info(f"Not retrying non-retryable {self._error.kind.value} error")
            return False

        self._error = None
        self._attempt = None
        self._transition(ConnectionState.IDLE, "retry")
        self._settle_idle()
        return True

    async def wait_until_settled(self) -> None:
        """Wait for an in-flight code exchange to finish."""
        while self._exchange_task is not None and not self._exchange_task.done():
            await asyncio.shield(self._exchange_task)
        await self.callbacks.drain()

    async def close(self) -> None:
        """Release everything this connection holds.

        Aborts a Connecting attempt, cancels an in-flight exchange and closes
        the HTTP client if this connection created it. A cancelled exchange
        leaves the machine in a retryable Error, since the backend may or may
        not have provisioned the account.
        """
        if self._state is ConnectionState.CONNECTING:
            self._leave_connecting(ConnectionState.IDLE, "closed")
            self._attempt = None
        self._release_listener()

        if self._exchange_task is not None and not self._exchange_task.done():
            self._exchange_task.cancel()
            try:
                await self._exchange_task
            except asyncio.CancelledError:
                pass
        self._exchange_task = None

        if self._state is ConnectionState.EXCHANGING:
            self._attempt = None
            self._fail(ErrorKind.EXCHANGE, EXCHANGE_INTERRUPTED_MESSAGE, "closed")

        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ================================
    # Event producers
    # ================================

    def _on_session_payload(self, attempt_id: str, payload: SessionPayload) -> None:
        if not self._is_current(attempt_id) or self._state is not ConnectionState.CONNECTING:
            return
        self._attempt.session_payload = payload

    def _on_cancel_message(self, attempt_id: str) -> None:
        if not self._is_current(attempt_id) or self._state is not ConnectionState.CONNECTING:
            return
        self._leave_connecting(ConnectionState.IDLE, "cancel message")
        self._attempt = None
        self._settle_idle()

    def _on_authorization_result(
        self, attempt_id: str, result: AuthorizationResult
    ) -> None:
        if not self._is_current(attempt_id) or self._state is not ConnectionState.CONNECTING:
            logger.debug(f"Ignoring {type(result).__name__} for a finished attempt")
            return

        attempt = self._attempt
        attempt.result = result

        if isinstance(result, Granted):
            self._leave_connecting(ConnectionState.EXCHANGING, "code granted")
            self._exchange_task = self._get_loop().create_task(
                self._exchange(attempt, result.code), name=f"exchange_{attempt_id}"
            )
        elif isinstance(result, Denied):
            self._leave_connecting(
                ConnectionState.ERROR,
                "denied",
                FlowError(ErrorKind.AUTHORIZATION, NO_CODE_MESSAGE),
            )
            self.callbacks.call_notice(
                "error", "No authorization code received from Facebook."
            )
            self.callbacks.call_error(NO_CODE_MESSAGE)
        elif isinstance(result, Cancelled):
            self._leave_connecting(ConnectionState.IDLE, "popup closed")
            self._attempt = None
            self._settle_idle()

    async def _exchange(self, attempt: ConnectionAttempt, code: str) -> None:
        try:
            result = await self.exchanger.exchange(
                code, attempt.session_payload, self.entity_id
            )
        except ExchangeFailed as e:
            self._finish_exchange_failed(attempt, e.reason)
            return
        except Exception:
            logger.exception("Unexpected error during code exchange")
            self._finish_exchange_failed(attempt, GENERIC_EXCHANGE_ERROR)
            return

        if not self._is_current(attempt.attempt_id):
            return
        self._release_listener()
        self._transition(ConnectionState.COMPLETE, "exchange succeeded")
        self.callbacks.call_notice("success", CONNECTED_NOTICE)
        self.callbacks.call_success(result.data)

    def _finish_exchange_failed(self, attempt: ConnectionAttempt, reason: str) -> None:
        if not self._is_current(attempt.attempt_id):
            return
        self._release_listener()
        self._fail(ErrorKind.EXCHANGE, reason, "exchange failed")
        self.callbacks.call_notice("error", f"Setup failed: {reason}")
        self.callbacks.call_error(reason)

    # ================================
    # Transitions
    # ================================

    def _transition(
        self, target: ConnectionState, event: str, error: FlowError | None = None
    ) -> None:
        source = self._state
        if (source, target) not in ALLOWED_TRANSITIONS:
            raise RuntimeError(
                f"Invalid transition {source.value} -> {target.value} on {event}"
            )

        self._state = target
        if error is not None:
            self._error = error
        self.history.append(
            Transition(source, event, target, listener_attached=self.listener_attached)
        )
        logger.debug(f"{source.value} -> {target.value} ({event})")
        self.callbacks.call_state_change(self.status)

    def _leave_connecting(
        self, target: ConnectionState, event: str, error: FlowError | None = None
    ) -> None:
        """The only way out of Connecting: the listener goes first."""
        self._release_listener()
        self._transition(target, event, error)

    def _release_listener(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def _fail(self, kind: ErrorKind, message: str, event: str) -> None:
        self._transition(ConnectionState.ERROR, event, FlowError(kind, message))

    def _settle_idle(self) -> None:
        """From Idle, go straight back to Ready when the SDK is already up."""
        config = self._config
        if (
            self._state is ConnectionState.IDLE
            and config is not None
            and self.bootstrap.is_ready(config)
        ):
            self._transition(ConnectionState.READY, "sdk already ready")

    def _is_current(self, attempt_id: str) -> bool:
        return self._attempt is not None and self._attempt.attempt_id == attempt_id

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop
