"""Tests for the Embedded Signup connection state machine.

High-impact tests covering the whole flow:
- Config and SDK failures end in a non-retryable error
- Granted codes are exchanged with whatever session info was captured
- Cancellation (popup closed or cancel message) returns silently to Ready
- Exchange failures are retryable and surface the backend's reason
- The session capture listener is attached exactly while Connecting
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from embedded_signup.callbacks import SignupCallbacks
from embedded_signup.connection import EmbeddedSignupConnection
from embedded_signup.host.local import LocalMessageChannel
from embedded_signup.models.config import ProviderConfig
from embedded_signup.models.errors import ConfigurationError, ExchangeFailed
from embedded_signup.models.exchange import GENERIC_EXCHANGE_ERROR, ProvisionResult
from embedded_signup.models.messages import WindowMessage
from embedded_signup.models.state import ConnectionState, ErrorKind
from embedded_signup.presentation import StatusKind
from embedded_signup.services.bootstrap import (
    ProviderSdkBootstrap,
    get_provider_bootstrap,
)
from embedded_signup.settings import SignupSettings
from tests.fakes import FakeProviderRuntime

TRUSTED = "https://www.facebook.com"
FLOW = "WA_EMBEDDED_SIGNUP"


async def until(predicate, attempts: int = 50) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class ConnectionTestBase:
    def setup_method(self):
        # Arrange
        self.settings = SignupSettings(api_base_url="https://admin.example.com/api")
        self.runtime = FakeProviderRuntime(auto_load=True)
        self.channel = LocalMessageChannel()
        self.config_client = AsyncMock()
        self.config_client.fetch.return_value = ProviderConfig(
            provider_app_id="app-1", flow_config_id="cfg-1"
        )
        self.exchanger = AsyncMock()
        self.exchanger.exchange.return_value = ProvisionResult(
            success=True, data={"wabaId": "1", "phoneNumberId": "2"}
        )
        self.bootstrap = ProviderSdkBootstrap(self.runtime, self.settings)

        self.successes = []
        self.errors = []
        self.notices = []
        self.statuses = []
        self.callbacks = SignupCallbacks()
        self.callbacks.on_success(self.successes.append)
        self.callbacks.on_error(self.errors.append)
        self.callbacks.on_notice(lambda level, msg: self.notices.append((level, msg)))
        self.callbacks.on_state_change(self.statuses.append)

        self.connection = EmbeddedSignupConnection(
            "merchant-1",
            config_client=self.config_client,
            bootstrap=self.bootstrap,
            channel=self.channel,
            exchanger=self.exchanger,
            settings=self.settings,
            callbacks=self.callbacks,
        )

    @property
    def sdk(self):
        return self.runtime.sdk

    def post_session(self, data, origin=TRUSTED):
        self.channel.dispatch(
            WindowMessage(origin=origin, data=json.dumps({"type": FLOW, "data": data}))
        )

    def post_cancel(self):
        self.channel.dispatch(
            WindowMessage(
                origin=TRUSTED,
                data=json.dumps({"type": FLOW, "event": "CANCEL", "data": {}}),
            )
        )

    async def ready_connection(self):
        await self.connection.start()
        assert self.connection.state is ConnectionState.READY

    def assert_listener_invariant(self):
        """The listener is attached iff the machine is Connecting, at every step."""
        for transition in self.connection.history:
            assert transition.listener_attached == (
                transition.target is ConnectionState.CONNECTING
            ), transition
        expected = 1 if self.connection.state is ConnectionState.CONNECTING else 0
        assert self.channel.listener_count == expected

    def targets(self):
        return [t.target for t in self.connection.history]


class TestStartup(ConnectionTestBase):
    async def test_start_reaches_ready(self):
        # Act
        await self.connection.start()

        # Assert
        assert self.connection.state is ConnectionState.READY
        assert self.targets() == [ConnectionState.SDK_LOADING, ConnectionState.READY]
        assert self.connection.status.can_launch
        assert self.sdk.init_calls[0]["app_id"] == "app-1"
        self.assert_listener_invariant()

    async def test_config_failure_never_reaches_sdk_loading(self):
        # Arrange
        self.config_client.fetch.side_effect = ConfigurationError("404")

        # Act
        await self.connection.start()

        # Assert
        assert self.connection.state is ConnectionState.ERROR
        assert self.connection.error.kind is ErrorKind.CONFIGURATION
        assert ConnectionState.SDK_LOADING not in self.targets()
        assert self.connection.status.kind is StatusKind.NOT_CONFIGURED
        assert self.runtime.injections == []

    async def test_unexpected_config_error_is_handled_locally(self):
        self.config_client.fetch.side_effect = RuntimeError("boom")

        await self.connection.start()

        assert self.connection.state is ConnectionState.ERROR
        assert self.connection.error.kind is ErrorKind.CONFIGURATION

    async def test_sdk_load_failure_is_bootstrap_error(self):
        # Arrange
        self.runtime.auto_load = False

        # Act
        task = asyncio.create_task(self.connection.start())
        await until(lambda: self.runtime.on_error is not None)
        assert self.connection.state is ConnectionState.SDK_LOADING
        self.runtime.fail_loading()
        await task

        # Assert
        assert self.connection.state is ConnectionState.ERROR
        assert self.connection.error.kind is ErrorKind.BOOTSTRAP
        assert self.connection.status.kind is StatusKind.NOT_CONFIGURED

    async def test_non_retryable_errors_ignore_retry(self):
        self.config_client.fetch.side_effect = ConfigurationError("404")
        await self.connection.start()

        assert not self.connection.retry()
        assert self.connection.state is ConnectionState.ERROR

    async def test_start_twice_is_noop(self):
        await self.connection.start()
        await self.connection.start()

        self.config_client.fetch.assert_awaited_once()
        assert self.targets() == [ConnectionState.SDK_LOADING, ConnectionState.READY]

    async def test_concurrent_start_fetches_config_once(self):
        # Arrange
        config = self.config_client.fetch.return_value

        async def slow_fetch():
            await asyncio.sleep(0.01)
            return config

        self.config_client.fetch.side_effect = slow_fetch

        # Act
        results = await asyncio.gather(
            self.connection.start(), self.connection.start(), return_exceptions=True
        )

        # Assert
        assert results == [None, None]
        self.config_client.fetch.assert_awaited_once()
        assert self.connection.state is ConnectionState.READY
        assert self.targets() == [ConnectionState.SDK_LOADING, ConnectionState.READY]

    async def test_runtime_error_while_loading_sdk_is_bootstrap_error(self):
        # Arrange
        def blocked(script_id, src, on_error):
            raise OSError("script element blocked by CSP")

        self.runtime.inject_script = blocked

        # Act
        await self.connection.start()

        # Assert
        assert self.connection.state is ConnectionState.ERROR
        assert self.connection.error.kind is ErrorKind.BOOTSTRAP
        assert self.connection.status.kind is StatusKind.NOT_CONFIGURED

    async def test_unexpected_bootstrap_error_is_handled_locally(self):
        self.bootstrap.ensure_ready = AsyncMock(side_effect=RuntimeError("boom"))

        await self.connection.start()

        assert self.connection.state is ConnectionState.ERROR
        assert self.connection.error.kind is ErrorKind.BOOTSTRAP

    async def test_status_changes_are_reported(self):
        await self.connection.start()

        assert [s.kind for s in self.statuses] == [
            StatusKind.LOADING_SDK,
            StatusKind.READY_TO_CONNECT,
        ]


class TestLaunchAndExchange(ConnectionTestBase):
    async def test_launch_before_ready_is_rejected_with_notice(self):
        launched = self.connection.launch()

        assert not launched
        assert self.connection.state is ConnectionState.IDLE
        assert self.notices == [
            ("error", "Facebook SDK not ready. Please wait and try again.")
        ]
        assert self.channel.listener_count == 0

    async def test_granted_code_without_session_info_completes(self):
        # Arrange
        await self.ready_connection()

        # Act
        assert self.connection.launch()
        assert self.connection.state is ConnectionState.CONNECTING
        self.assert_listener_invariant()

        self.sdk.grant("abc123")
        assert self.connection.state is ConnectionState.EXCHANGING
        self.assert_listener_invariant()

        await self.connection.wait_until_settled()

        # Assert
        assert self.connection.state is ConnectionState.COMPLETE
        self.exchanger.exchange.assert_awaited_once_with("abc123", None, "merchant-1")
        assert self.successes == [{"wabaId": "1", "phoneNumberId": "2"}]
        assert self.errors == []
        assert ("success", "WhatsApp Business Account connected!") in self.notices
        assert self.connection.status.kind is StatusKind.CONNECTED
        self.assert_listener_invariant()

    async def test_session_info_before_callback_is_attached_to_exchange(self):
        await self.ready_connection()
        self.connection.launch()

        self.post_session({"waba_id": "1", "phone_number_id": "2"})
        self.sdk.grant("xyz")
        await self.connection.wait_until_settled()

        self.exchanger.exchange.assert_awaited_once_with(
            "xyz", {"waba_id": "1", "phone_number_id": "2"}, "merchant-1"
        )
        assert self.connection.state is ConnectionState.COMPLETE

    async def test_latest_session_info_wins(self):
        await self.ready_connection()
        self.connection.launch()

        self.post_session({"waba_id": "old"})
        self.post_session({"waba_id": "new", "phone_number_id": "2"})
        self.sdk.grant("xyz")
        await self.connection.wait_until_settled()

        args = self.exchanger.exchange.call_args[0]
        assert args[1] == {"waba_id": "new", "phone_number_id": "2"}

    async def test_untrusted_messages_do_not_change_the_attempt(self):
        await self.ready_connection()
        self.connection.launch()

        self.post_session({"waba_id": "evil"}, origin="https://evil.example.com")
        self.channel.dispatch(WindowMessage(origin=TRUSTED, data="hello"))
        self.channel.dispatch(
            WindowMessage(origin="https://evil.example.com", data='{"type": "WA_EMBEDDED_SIGNUP", "event": "CANCEL"}')
        )

        assert self.connection.state is ConnectionState.CONNECTING
        assert self.connection.attempt.session_payload is None

    async def test_session_info_after_callback_is_not_captured(self):
        await self.ready_connection()
        self.connection.launch()

        self.sdk.grant("abc123")
        self.post_session({"waba_id": "late"})
        await self.connection.wait_until_settled()

        self.exchanger.exchange.assert_awaited_once_with("abc123", None, "merchant-1")

    async def test_second_launch_while_connecting_is_rejected(self):
        await self.ready_connection()
        self.connection.launch()

        assert not self.connection.launch()

        assert len(self.sdk.login_calls) == 1
        assert self.channel.listener_count == 1

    async def test_status_sequence_for_successful_flow(self):
        await self.ready_connection()
        self.connection.launch()
        self.sdk.grant("abc123")
        await self.connection.wait_until_settled()

        assert [s.kind for s in self.statuses] == [
            StatusKind.LOADING_SDK,
            StatusKind.READY_TO_CONNECT,
            StatusKind.CONNECTING,
            StatusKind.EXCHANGING,
            StatusKind.CONNECTED,
        ]

    async def test_async_success_callback_is_awaited(self):
        received = []

        async def on_success(data):
            await asyncio.sleep(0)
            received.append(data)

        self.callbacks.on_success(on_success)
        await self.ready_connection()
        self.connection.launch()
        self.sdk.grant("abc123")

        await self.connection.wait_until_settled()

        assert received == [{"wabaId": "1", "phoneNumberId": "2"}]


class TestCancellation(ConnectionTestBase):
    async def test_closed_popup_returns_to_ready_without_error(self):
        # Arrange
        await self.ready_connection()
        self.connection.launch()
        self.post_session({"waba_id": "aborted"})

        # Act
        self.sdk.close_popup()

        # Assert
        assert self.connection.state is ConnectionState.READY
        assert self.targets()[-2:] == [ConnectionState.IDLE, ConnectionState.READY]
        assert self.connection.error is None
        assert self.errors == []
        assert self.notices == []
        self.exchanger.exchange.assert_not_awaited()
        self.assert_listener_invariant()

    async def test_relaunch_after_cancel_has_no_leftover_session_info(self):
        await self.ready_connection()
        self.connection.launch()
        self.post_session({"waba_id": "aborted"})
        self.sdk.close_popup()

        self.connection.launch()
        assert self.connection.attempt.session_payload is None
        self.sdk.grant("fresh")
        await self.connection.wait_until_settled()

        self.exchanger.exchange.assert_awaited_once_with("fresh", None, "merchant-1")
        self.assert_listener_invariant()

    async def test_cancel_message_aborts_before_popup_callback(self):
        await self.ready_connection()
        self.connection.launch()
        stale_callback, _ = self.sdk.login_calls[-1]

        self.post_cancel()

        assert self.connection.state is ConnectionState.READY
        assert self.channel.listener_count == 0

        # Popup callback for the aborted attempt arrives afterwards
        stale_callback({"authResponse": {"code": "late"}})

        assert self.connection.state is ConnectionState.READY
        self.exchanger.exchange.assert_not_awaited()
        self.assert_listener_invariant()

    async def test_stale_callback_does_not_touch_new_attempt(self):
        await self.ready_connection()
        self.connection.launch()
        stale_callback, _ = self.sdk.login_calls[-1]
        self.post_cancel()

        self.connection.launch()
        stale_callback({"authResponse": {"code": "late"}})

        assert self.connection.state is ConnectionState.CONNECTING
        self.exchanger.exchange.assert_not_awaited()

    async def test_close_while_connecting_detaches_listener(self):
        await self.ready_connection()
        self.connection.launch()

        await self.connection.close()

        assert self.connection.state is ConnectionState.IDLE
        assert self.channel.listener_count == 0
        self.assert_listener_invariant()

    async def test_close_during_exchange_ends_in_retryable_error(self):
        # Arrange
        started = asyncio.Event()

        async def hanging_exchange(code, session_payload, entity_id):
            started.set()
            await asyncio.sleep(10)

        self.exchanger.exchange.side_effect = hanging_exchange
        await self.ready_connection()
        self.connection.launch()
        self.sdk.grant("abc123")
        await started.wait()

        # Act
        await self.connection.close()

        # Assert
        assert self.connection.state is ConnectionState.ERROR
        assert self.connection.error.kind is ErrorKind.EXCHANGE
        status = self.connection.status
        assert not status.busy
        assert status.can_retry
        assert self.successes == []
        self.assert_listener_invariant()


class TestFailures(ConnectionTestBase):
    async def test_denied_is_retryable_authorization_error(self):
        # Arrange
        await self.ready_connection()
        self.connection.launch()

        # Act
        self.sdk.deny()

        # Assert
        assert self.connection.state is ConnectionState.ERROR
        assert self.connection.error.kind is ErrorKind.AUTHORIZATION
        assert self.connection.error.message == "No authorization code received"
        assert self.errors == ["No authorization code received"]
        self.exchanger.exchange.assert_not_awaited()
        self.assert_listener_invariant()

        assert self.connection.retry()
        assert self.connection.state is ConnectionState.READY
        assert self.connection.launch()

    async def test_exchange_failure_surfaces_backend_reason(self):
        # Arrange
        self.exchanger.exchange.side_effect = ExchangeFailed("token expired")
        await self.ready_connection()
        self.connection.launch()

        # Act
        self.sdk.grant("abc123")
        await self.connection.wait_until_settled()

        # Assert
        assert self.connection.state is ConnectionState.ERROR
        assert self.connection.error.kind is ErrorKind.EXCHANGE
        assert self.connection.error.message == "token expired"
        assert self.errors == ["token expired"]
        assert ("error", "Setup failed: token expired") in self.notices
        status = self.connection.status
        assert status.kind is StatusKind.FAILED
        assert status.can_retry
        self.assert_listener_invariant()

    async def test_retry_after_exchange_failure_reenables_launch(self):
        self.exchanger.exchange.side_effect = ExchangeFailed("token expired")
        await self.ready_connection()
        self.connection.launch()
        self.sdk.grant("abc123")
        await self.connection.wait_until_settled()

        assert self.connection.retry()

        assert self.targets()[-2:] == [ConnectionState.IDLE, ConnectionState.READY]
        assert self.connection.error is None
        assert self.connection.status.can_launch

        self.exchanger.exchange.side_effect = None
        assert self.connection.launch()
        self.sdk.grant("second")
        await self.connection.wait_until_settled()
        assert self.connection.state is ConnectionState.COMPLETE
        self.assert_listener_invariant()

    async def test_unexpected_exchange_error_uses_generic_message(self):
        self.exchanger.exchange.side_effect = RuntimeError("kaboom")
        await self.ready_connection()
        self.connection.launch()

        self.sdk.grant("abc123")
        await self.connection.wait_until_settled()

        assert self.connection.state is ConnectionState.ERROR
        assert self.connection.error.message == GENERIC_EXCHANGE_ERROR

    async def test_popup_that_fails_to_open_is_authorization_error(self):
        await self.ready_connection()

        def broken_login(callback, options):
            raise RuntimeError("popup blocked")

        self.sdk.login = broken_login

        assert not self.connection.launch()

        assert self.connection.state is ConnectionState.ERROR
        assert self.connection.error.kind is ErrorKind.AUTHORIZATION
        assert self.errors == ["Could not open popup: popup blocked"]
        assert self.notices == [("error", "Could not open popup: popup blocked")]
        self.assert_listener_invariant()

    async def test_retry_outside_error_is_noop(self):
        await self.ready_connection()

        assert not self.connection.retry()
        assert self.connection.state is ConnectionState.READY

    async def test_failing_host_callback_does_not_break_the_flow(self):
        def explode(data):
            raise RuntimeError("host bug")

        self.callbacks.on_success(explode)
        await self.ready_connection()
        self.connection.launch()
        self.sdk.grant("abc123")

        await self.connection.wait_until_settled()

        assert self.connection.state is ConnectionState.COMPLETE


class TestExchangeOnlyOnGrant(ConnectionTestBase):
    @pytest.mark.parametrize(
        "finish", ["grant", "deny", "close_popup", "cancel_message"]
    )
    async def test_exchange_happens_only_for_granted_results(self, finish):
        await self.ready_connection()
        self.connection.launch()
        self.post_session({"waba_id": "1"})

        if finish == "grant":
            self.sdk.grant("abc123")
        elif finish == "deny":
            self.sdk.deny()
        elif finish == "close_popup":
            self.sdk.close_popup()
        else:
            self.post_cancel()
        await self.connection.wait_until_settled()

        if finish == "grant":
            self.exchanger.exchange.assert_awaited_once()
        else:
            self.exchanger.exchange.assert_not_awaited()
        self.assert_listener_invariant()


class TestCreate:
    async def test_create_uses_process_wide_bootstrap(self):
        settings = SignupSettings(api_base_url="https://admin.example.com/api")
        runtime = FakeProviderRuntime(auto_load=True)

        connection = EmbeddedSignupConnection.create(
            "merchant-1", runtime, LocalMessageChannel(), settings
        )

        assert connection.bootstrap is get_provider_bootstrap(runtime, settings)
        assert connection.state is ConnectionState.IDLE

        await connection.close()
        assert connection._http_client is None
