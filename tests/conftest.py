"""
Pytest configuration and shared fixtures for RiftSettle tests.

This module provides shared fixtures and test configuration including:
- A memory ledger store, mock chain and thread lock manager per test
- A controllable clock for fee gates and token expiry
- Settlement services wired the way the API wires them
- Flask app and client with rate limiting and API keys disabled
- Metric and rate limit resets between tests
"""

import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

# Set up test environment before any imports
os.environ["RIFTSETTLE_API_KEY"] = "test-api-key-12345"
os.environ["RIFTSETTLE_REQUIRE_AUTH"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["CHAIN_BACKEND"] = "mock"
os.environ.pop("REDIS_URL", None)
os.environ.pop("CRON_SECRET", None)

TREASURY = "Treasury1111111111111111111111111111111111"
ADMIN = "AdminWa11et111111111111111111111111111111"
VIP = "VipWa11et11111111111111111111111111111111"
CREATOR = "CreatorWa11et1111111111111111111111111111"
LP_A = "LpWa11etAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
LP_B = "LpWa11etBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBB"
REFERRER = "ReferrerWa11et111111111111111111111111111"

# Fee gates are set from the clock; mock trades carry wall-clock
# timestamps, so they always land after this instant.
EPOCH = datetime(2024, 1, 1, 12, 0, 0)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = EPOCH):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StaticPriceFetcher:
    """Price fetcher returning a fixed price, or raising when ``fail`` is set."""

    def __init__(self, price: str = "150.00"):
        self.price = Decimal(price)
        self.fail = False
        self.calls = 0

    def fetch(self, asset_id: str) -> Decimal:
        self.calls += 1
        if self.fail:
            raise ConnectionError("price source down")
        return self.price


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset metrics, rate limits and process-wide singletons around each test."""
    from access_policy import reset_access_policy
    from api.utils import rate_limit_store, services
    from monitoring import metrics
    from retry import reset_circuit_breakers

    metrics.reset()
    rate_limit_store.clear()
    reset_circuit_breakers()
    yield
    services.clear()
    reset_access_policy()
    rate_limit_store.clear()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    from storage import MemoryLedgerStore

    return MemoryLedgerStore()


@pytest.fixture
def chain():
    """Mock chain with a funded treasury."""
    from chain_client import MockChainClient

    return MockChainClient({TREASURY: Decimal("100")})


@pytest.fixture
def lock_manager():
    from scaling import LocalLockManager

    return LocalLockManager()


@pytest.fixture
def settings():
    from settings import SettlementSettings

    return SettlementSettings(treasury_wallet=TREASURY, chain_backend="mock", confirm_timeout=0.0)


@pytest.fixture
def access_policy():
    from access_policy import AccessPolicy

    return AccessPolicy(admin_wallets={ADMIN}, vip_wallets={VIP})


@pytest.fixture
def ledger(store, clock):
    from settlement_ledger import SettlementLedger

    return SettlementLedger(store, clock=clock)


@pytest.fixture
def registry(store, clock):
    from rift_config import RiftConfigRegistry

    return RiftConfigRegistry(store, clock=clock)


@pytest.fixture
def referrals(store, ledger, access_policy):
    from referrals import ReferralEngine

    return ReferralEngine(store, ledger, is_vip=access_policy.is_vip)


@pytest.fixture
def audit_log(store, clock):
    from treasury import TreasuryAuditLog

    return TreasuryAuditLog(store, clock=clock)


@pytest.fixture
def claims(store, ledger, chain, lock_manager, audit_log, settings, clock):
    from claims import ClaimProcessor

    return ClaimProcessor(
        store, ledger, chain, lock_manager, audit_log, TREASURY, settings=settings, clock=clock
    )


@pytest.fixture
def scheduler(store, ledger, referrals, registry, chain, lock_manager, audit_log, settings, access_policy, clock):
    from distribution import DistributionScheduler

    return DistributionScheduler(
        store,
        ledger,
        referrals,
        registry,
        chain,
        lock_manager,
        audit_log,
        TREASURY,
        settings=settings,
        is_vip=access_policy.is_vip,
        clock=clock,
    )


@pytest.fixture
def make_lp_rift(registry, scheduler):
    """Factory for a fee-sharing rift with LP positions by share percent."""

    def _make(rift_id: str, shares: dict[str, str], lp_split: int = 40):
        registry.update_config(rift_id, is_team_rift=False, lp_split=lp_split, fees_enabled=True)
        for wallet, share in shares.items():
            scheduler.update_lp_position(rift_id, wallet, share_percent=share)
        return registry.get(rift_id)

    return _make


@pytest.fixture
def make_team_rift(registry):
    """Factory for a team rift owned by ``creator``."""

    def _make(rift_id: str, creator: str = CREATOR, team_split: int = 80):
        registry.register_rift(rift_id, creator_wallet=creator, symbol=rift_id.upper())
        registry.update_config(rift_id, is_team_rift=True, lp_split=team_split, fees_enabled=True)
        return registry.get(rift_id)

    return _make


@pytest.fixture
def price_fetcher():
    return StaticPriceFetcher()


@pytest.fixture
def flask_app(settings, store, chain, lock_manager, access_policy, price_fetcher, clock):
    """Flask app over the per-test services."""
    from api import create_app
    from price_oracle import PriceOracle

    app = create_app(
        settings=settings,
        store=store,
        chain=chain,
        lock_manager=lock_manager,
        access_policy=access_policy,
        price_oracle=PriceOracle(price_fetcher),
        clock=clock,
    )
    app.config["TESTING"] = True
    return app


@pytest.fixture
def flask_client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()


@pytest.fixture
def admin_headers():
    return {"Content-Type": "application/json", "X-Wallet-Address": ADMIN}


@pytest.fixture
def test_auth_headers():
    """Headers for authenticated requests."""
    return {"Content-Type": "application/json", "X-API-Key": "test-api-key-12345"}
