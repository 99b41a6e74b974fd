import logfire
import pytest


@pytest.fixture(scope="session", autouse=True)
def configure_logfire():
    # Keep test runs local: no export, no console noise
    logfire.configure(send_to_logfire=False, console=False)
