"""
Creator Commission Settlement Engine

Records confirmed payments exactly once in an append-only attribution ledger,
credits tiered commissions to referring creators and their CMOs, and settles
creator balances through a privilege-gated withdrawal workflow.

The ledger is event-sourced: creator balances and CMO payouts are
materialized views that are updated incrementally and can always be rebuilt
by replaying the ledger.
"""

__version__ = "1.0.0"
