import logging

import anyio
import pytest
from key_value.aio.stores.memory import MemoryStore

from authbridge.server.auth.models import Identity, UserRecord
from authbridge.settings import Settings
from authbridge.storage.users import SQLiteUserStore
from flow_helpers import BRIDGE_URL, SIGNING_KEY


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure AnyIO to only use asyncio backend (not trio)."""
    return "asyncio"


@pytest.fixture(autouse=True)
def propagate_authbridge_logs():
    """Send authbridge records to caplog instead of the rich handlers."""
    logger = logging.getLogger("authbridge")
    handlers = logger.handlers[:]
    propagate = logger.propagate
    for handler in handlers:
        logger.removeHandler(handler)
    logger.propagate = True
    yield
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = propagate


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        home=tmp_path,
        base_url=BRIDGE_URL,
        upstream_client_id="upstream-client-id",
        upstream_client_secret="upstream-client-secret",
        cookie_signing_key=SIGNING_KEY,
        privileged_logins={"octocat"},
    )


@pytest.fixture
def user_store(tmp_path) -> SQLiteUserStore:
    return SQLiteUserStore(tmp_path / "users.db")


@pytest.fixture
def storage():
    """Create a fresh in-memory storage for each test."""
    return MemoryStore()


@pytest.fixture
def user(user_store) -> UserRecord:
    """A stored user for the privileged login ``octocat``."""
    return anyio.run(
        user_store.upsert_user,
        Identity(provider_id=583231, login_name="octocat", display_name="The Octocat"),
    )
