# File: tests/conftest.py
import pytest

from site_lens.config import ScannerConfig

from fakes import FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config() -> ScannerConfig:
    """Local config with no scorer key and no Redis."""
    return ScannerConfig(
        environment="local",
        psi={"api_key": "", "require_api_key": False},
        jobs={"redis_url": None, "heartbeat_interval_s": 0.01},
    )
