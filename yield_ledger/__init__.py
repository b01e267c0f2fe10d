"""
Yield Ledger

A yield-bearing token ledger: holders accrue a proportional share of
deposited yield weighted by balance-seconds, with exact integer accounting
and hash-chained audit trails.
"""

__version__ = "1.0.0"
