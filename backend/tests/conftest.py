"""Pytest configuration and fixtures."""

from unittest.mock import AsyncMock

import pytest
import yaml
from httpx import AsyncClient, ASGITransport
from jose import jwt

from blockhaven.main import app
from blockhaven.models import Currency, Database, ExchangePair, User, UserType
from blockhaven.services.catalog_sync import CatalogSynchronizer
from blockhaven.services.config import ConfigService
from blockhaven.services.logging_service import SyncLoggingService
from blockhaven.services.provider import ProviderClient, ProviderCurrency


TEST_JWT_SECRET = "test-jwt-secret"


def make_token(user_id: int, secret: str = TEST_JWT_SECRET) -> str:
    return jwt.encode({"sub": str(user_id)}, secret, algorithm="HS256")


def make_currency(ticker: str, network: str = None, name: str = None, **overrides) -> ProviderCurrency:
    """Build a provider catalog entry for tests."""
    return ProviderCurrency(
        ticker=ticker,
        network=network if network is not None else ticker,
        name=name or ticker.upper(),
        **overrides,
    )


@pytest.fixture(scope="function")
async def database(tmp_path):
    """Fresh file-backed SQLite database per test."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    db.open()
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture(scope="function")
async def test_db(database):
    """Session for arranging and inspecting rows."""
    async with database.session() as session:
        yield session


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Loaded config pointing logs at a temp directory."""
    for name in ("CHANGENOW_API_KEY", "CHANGENOW_X_API_KEY", "DATABASE_URL", "JWT_SECRET"):
        monkeypatch.delenv(name, raising=False)

    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({
        "auth": {"jwt_secret": TEST_JWT_SECRET},
        "exchange": {"require_known_currencies": True},
        "logging": {"directory": str(tmp_path / "sync-logs")},
    }))
    config = ConfigService(str(config_path))
    config.load_and_validate()
    return config


@pytest.fixture
def mock_provider():
    """Provider client double; every coroutine method is an AsyncMock."""
    provider = AsyncMock(spec=ProviderClient)
    provider.list_currencies.return_value = []
    provider.list_pairs.return_value = []
    return provider


@pytest.fixture
def run_logger(tmp_path):
    return SyncLoggingService(tmp_path / "sync-logs")


@pytest.fixture
def synchronizer(database, mock_provider, run_logger):
    """Synchronizer with small batches so multi-batch paths are exercised."""
    return CatalogSynchronizer(
        database,
        mock_provider,
        currency_batch_size=2,
        pair_batch_size=2,
        run_logger=run_logger,
    )


@pytest.fixture(scope="function")
async def client(database, test_config, mock_provider, synchronizer):
    """Create test client wired to the test database and provider double."""
    app.state.config = test_config
    app.state.database = database
    app.state.provider = mock_provider
    app.state.synchronizer = synchronizer

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def customer_user(test_db):
    user = User(email="customer@example.com", user_type=UserType.CUSTOMER, is_active=True)
    test_db.add(user)
    await test_db.commit()
    return user


@pytest.fixture
async def admin_user(test_db):
    user = User(email="admin@example.com", user_type=UserType.ADMIN, is_active=True)
    test_db.add(user)
    await test_db.commit()
    return user


@pytest.fixture
def customer_headers(customer_user):
    return {"Authorization": f"Bearer {make_token(customer_user.id)}"}


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {make_token(admin_user.id)}"}


@pytest.fixture
async def seeded_catalog(test_db):
    """A small catalog: btc and eth rows plus pairs, one leg has no currency row."""
    test_db.add_all([
        Currency(ticker="btc", network="btc", name="Bitcoin", image_url="https://img/btc.svg", featured=True),
        Currency(ticker="eth", network="eth", name="Ethereum", image_url="https://img/eth.svg"),
        ExchangePair(from_ticker="btc", from_network="btc", to_ticker="eth", to_network="eth",
                     flow_standard=True, flow_fixed_rate=True),
        ExchangePair(from_ticker="eth", from_network="eth", to_ticker="usdt", to_network="trx",
                     flow_standard=True, flow_fixed_rate=False),
    ])
    await test_db.commit()
