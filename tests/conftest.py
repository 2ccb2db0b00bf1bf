import pytest

from embedded_signup.services.bootstrap import reset_provider_bootstrap


@pytest.fixture(autouse=True)
def fresh_provider_bootstrap():
    """The SDK bootstrap is process-wide; every test starts without one."""
    reset_provider_bootstrap()
    yield
    reset_provider_bootstrap()
