"""Shared fixtures for Bitrix24 REST client tests."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

# Add project root to path so we can import modules directly
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from b24_auth import Credentials  # noqa: E402


WEBHOOK_URL = "https://acme.bitrix24.com/rest/12/abcSECRETxyz"


class FakeClock:
    """Millisecond clock advanced only by the test (or by fake sleeps)."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds * 1000)


class StubAuth:
    """In-memory credential provider that counts refreshes."""

    def __init__(self, credentials=None, refreshed=None, base_url="https://portal.bitrix24.com/rest",
                 refresh_error=None):
        self.credentials = credentials
        self.refreshed = refreshed or Credentials("new_token", "refresh_2", 3600, "portal.bitrix24.com", "m1")
        self.base_url = base_url
        self.refresh_error = refresh_error
        self.refresh_count = 0

    def get_credentials(self):
        return self.credentials if self.credentials is not None else False

    async def refresh_credentials(self):
        self.refresh_count += 1
        if self.refresh_error:
            raise self.refresh_error
        self.credentials = self.refreshed
        return self.refreshed

    def get_target_origin(self):
        return "https://portal.bitrix24.com"

    def get_target_origin_with_path(self):
        return self.base_url


def make_mock_response(status, data=None, json_error=None):
    """Create a mock aiohttp response usable as an async context manager."""
    resp = AsyncMock()
    resp.status = status
    resp.headers = {}

    async def json_func(content_type=None):
        if json_error:
            raise json_error
        return data
    resp.json = json_func

    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


@pytest.fixture
def webhook_url():
    return WEBHOOK_URL


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def oauth_credentials():
    return Credentials("token_1", "refresh_1", 3600, "portal.bitrix24.com", "member_1")


@pytest.fixture
def expired_response():
    return {"error": "expired_token", "error_description": "The access token provided has expired."}
