"""
RiftSettle - Rift profit accounting and settlement

Turns realized arbitrage profit of rift vaults into amounts owed to
liquidity providers, rift teams and referrers, and pays them out from
the protocol treasury.

Core Components:
    - AccrualEngine: Realized profit per rift from trade history
    - DistributionScheduler: Records earnings (and legacy direct payouts)
    - SettlementLedger: Earned / claimed / claimable per wallet
    - ClaimProcessor: Idempotent claim state machine
    - ReferralEngine: Tiered referrer cuts
    - TreasuryAuditLog: Payment audit log with retry queue

Infrastructure:
    - storage: Ledger stores (JSON file, PostgreSQL, memory)
    - scaling: Named locks and caches (local or Redis)
    - monitoring: Metrics, logging, and request middleware
"""

__version__ = "0.1.0"
