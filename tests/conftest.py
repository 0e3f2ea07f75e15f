"""Shared pytest fixtures for the credential lifecycle tests."""
import os
import sys

import pytest
from cryptography.fernet import Fernet

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

# ---------------------------------------------------------------------------
# Deterministic test environment - set BEFORE any settings are loaded.
# ---------------------------------------------------------------------------
os.environ.setdefault('TESTING', 'true')
os.environ.setdefault('SYNC_BACKEND', 'memory')

from core.scheduling import VirtualScheduler  # noqa: E402
from core.sync_channel import InMemorySyncBus  # noqa: E402
from core.timestamps import from_epoch  # noqa: E402
from credentials.tokens import CredentialToken, Session  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Reset the settings singleton between tests for isolation."""
    yield
    from config.settings import get_settings
    get_settings.cache_clear()


# =============================================================================
# Time and sync
# =============================================================================

@pytest.fixture
def scheduler():
    """Virtual clock starting at a fixed epoch."""
    return VirtualScheduler()


@pytest.fixture
def bus():
    return InMemorySyncBus()


# =============================================================================
# Credentials
# =============================================================================

@pytest.fixture
def make_token(scheduler):
    """Build a token relative to the virtual clock.

    ``age`` is how long ago it was issued; ``lifetime`` its total validity.
    """
    def _make(lifetime=3600.0, age=0.0, access_secret="access-initial",
              refresh_secret="refresh-initial", kind="Bearer"):
        issued = scheduler.time() - age
        return CredentialToken(
            access_secret=access_secret,
            issued_at=from_epoch(issued),
            expires_at=from_epoch(issued + lifetime),
            refresh_secret=refresh_secret,
            kind=kind,
        )
    return _make


class FakeAuthority:
    """In-memory credential authority with scriptable failures."""

    def __init__(self, scheduler, token=None, lifetime=3600.0, user_id="u1"):
        self.scheduler = scheduler
        self.lifetime = lifetime
        self.session = Session(user_id=user_id, token=token) if token is not None else None
        self.refresh_calls = 0
        self.fail_next = 0
        self.always_fail = False
        self.error = ConnectionError("authority unavailable")
        self._issued = 0

    def issue(self, lifetime=None):
        self._issued += 1
        now = self.scheduler.time()
        return CredentialToken(
            access_secret=f"access-{self._issued}",
            issued_at=from_epoch(now),
            expires_at=from_epoch(now + (lifetime or self.lifetime)),
            refresh_secret=f"refresh-{self._issued}",
        )

    async def authenticate(self, credentials):
        self.session = Session(user_id=credentials.get("user_id", "u1"), token=self.issue())
        return self.session

    async def refresh(self):
        self.refresh_calls += 1
        if self.always_fail:
            raise self.error
        if self.fail_next:
            self.fail_next -= 1
            raise self.error
        token = self.issue()
        if self.session is not None:
            self.session.token = token
        return token

    async def revoke(self):
        self.session = None

    async def get_current_session(self):
        return self.session


@pytest.fixture
def make_authority(scheduler):
    def _make(token=None, lifetime=3600.0):
        return FakeAuthority(scheduler, token=token, lifetime=lifetime)
    return _make


# =============================================================================
# MFA
# =============================================================================

@pytest.fixture
def fernet_key():
    return Fernet.generate_key().decode()
