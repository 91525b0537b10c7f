"""
Shared state for the RiftSettle API.

Wires the settlement services together once per process and publishes
them through ``api.utils.services`` for the blueprints. Tests call
``init_services`` with a memory store, a mock chain and a fixed clock.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from access_policy import AccessPolicy, configure_access_policy
from api.utils import ServiceRegistry, services
from chain_client import ChainClient, get_chain_client
from claims import ClaimProcessor
from distribution import DistributionScheduler
from price_oracle import HttpPriceFetcher, PriceOracle
from referrals import ReferralEngine
from rift_config import RiftConfigRegistry
from scaling import LockManager, get_cache, get_lock_manager
from settings import SettlementSettings
from settlement_ledger import SettlementLedger
from settlement_models import utc_now
from storage import LedgerStore, get_default_store
from treasury import TreasuryAuditLog

logger = logging.getLogger(__name__)


def init_services(
    settings: SettlementSettings | None = None,
    store: LedgerStore | None = None,
    chain: ChainClient | None = None,
    lock_manager: LockManager | None = None,
    access_policy: AccessPolicy | None = None,
    price_oracle: PriceOracle | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> ServiceRegistry:
    """
    Build every settlement service and register it in ``services``.

    Anything not passed in comes from the environment factories.
    """
    settings = settings or SettlementSettings.from_env()
    store = store or get_default_store()
    chain = chain or get_chain_client()
    lock_manager = lock_manager or get_lock_manager()

    registry = RiftConfigRegistry(store, clock=clock)
    if access_policy is None:
        access_policy = AccessPolicy.from_env(creator_lookup=registry.get_creator)
    elif access_policy.creator_lookup is None:
        access_policy.creator_lookup = registry.get_creator
    configure_access_policy(access_policy)

    ledger = SettlementLedger(store, clock=clock)
    referrals = ReferralEngine(store, ledger, is_vip=access_policy.is_vip)
    audit_log = TreasuryAuditLog(store, clock=clock)

    services.settings = settings
    services.store = store
    services.chain = chain
    services.lock_manager = lock_manager
    services.access_policy = access_policy
    services.ledger = ledger
    services.registry = registry
    services.referrals = referrals
    services.audit_log = audit_log
    services.claims = ClaimProcessor(
        store,
        ledger,
        chain,
        lock_manager,
        audit_log,
        settings.treasury_wallet,
        settings=settings,
        clock=clock,
    )
    services.distribution = DistributionScheduler(
        store,
        ledger,
        referrals,
        registry,
        chain,
        lock_manager,
        audit_log,
        settings.treasury_wallet,
        settings=settings,
        is_vip=access_policy.is_vip,
        clock=clock,
    )
    services.price_oracle = price_oracle or PriceOracle(HttpPriceFetcher(), cache=get_cache())

    if not settings.treasury_wallet:
        logger.warning("TREASURY_WALLET not set; claims and distributions are disabled")
    logger.info(f"Settlement services initialized (store={store.__class__.__name__})")
    return services
