"""
Pytest configuration og shared fixtures.
"""

import pytest

from file_upgrader.config import Settings
from file_upgrader.dependencies import reset_singletons


@pytest.fixture(autouse=True)
def clean_singletons():
    """Automatically reset singletons before hver test."""
    reset_singletons()
    yield
    reset_singletons()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with no env file and timings short enough for tests."""
    return Settings(
        _env_file=None,
        aps_client_id="client-id",
        aps_client_secret="client-secret",
        webhook_url="http://testserver/api/callback/conversion",
        max_concurrent_conversions=5,
        max_attempts=3,
        retry_delay_seconds=0.0,
        slot_poll_interval_seconds=0.01,
        dispatch_round_delay_seconds=0.0,
        sweep_interval_seconds=3600,
        log_file_path=str(tmp_path / "logs" / "file_upgrader.log"),
    )
