"""Pytest configuration and fixtures."""

import httpx
import pytest

from i2v_client.client import I2VClient
from i2v_client.config import ApiSettings, PollingSettings
from i2v_client.credentials import MemoryCredentialStore

BASE_URL = "https://video.example.test"


@pytest.fixture
def api_settings():
    """Endpoint settings pointing at a fake host."""
    return ApiSettings(base_url=BASE_URL)


@pytest.fixture
def fast_polling():
    """Polling settings fast enough for tests, with no ceiling."""
    return PollingSettings(interval=0.01, max_attempts=None, max_wait=None)


@pytest.fixture
def credentials():
    return MemoryCredentialStore("test-token")


@pytest.fixture
def make_client(api_settings):
    """Factory building an I2VClient whose traffic goes to ``handler``."""

    def _make(handler, **overrides):
        for key, value in overrides.items():
            setattr(api_settings, key, value)
        return I2VClient(api_settings, transport=httpx.MockTransport(handler))

    return _make
