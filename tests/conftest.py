import pytest

from courtbook.clients.resilience import portal_breaker
from courtbook.config import reset_settings
from courtbook.storage.database import DatabaseManager


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure required env vars are set for all tests."""
    monkeypatch.setenv("COURTBOOK_MASTER_KEY", "test-master-key")
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(autouse=True)
def _reset_breaker() -> None:
    """The portal breaker is module state; keep failures from leaking across tests."""
    portal_breaker.reset()
    yield
    portal_breaker.reset()


@pytest.fixture
def tmp_data_dir(tmp_path):
    """Provide a temporary data directory for tests that touch the filesystem."""
    return tmp_path / "data"


@pytest.fixture
async def db():
    """In-memory SQLite database with schema applied."""
    manager = DatabaseManager(":memory:")
    await manager.initialize()
    yield manager
    await manager.close()
